"""Environment driven settings for the relay."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import ConfigError

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080
DEFAULT_WS_PATH = "/cli/ws"
DEFAULT_KEEPALIVE_S = 30.0
DEFAULT_STATUS_INTERVAL_S = 30.0
DEFAULT_SHUTDOWN_TIMEOUT_S = 5.0
DEFAULT_MAX_MESSAGE_BYTES = 1024 * 1024

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _env_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


def _env_number(name: str, value: str, kind=float):
    try:
        return kind(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a {kind.__name__}, got {value!r}") from exc


@dataclass(frozen=True)
class Settings:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    ws_path: str = DEFAULT_WS_PATH
    keepalive_interval_s: float = DEFAULT_KEEPALIVE_S
    # 0 disables the periodic status log
    status_interval_s: float = DEFAULT_STATUS_INTERVAL_S
    shutdown_timeout_s: float = DEFAULT_SHUTDOWN_TIMEOUT_S
    max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES
    announce_presence: bool = True
    log_level: str = "INFO"
    uvloop: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``RELAY_*`` variables, falling back to defaults."""

        env = os.environ if environ is None else environ
        port = env.get("RELAY_PORT", env.get("PORT", str(DEFAULT_PORT)))
        settings = cls(
            host=env.get("RELAY_HOST", DEFAULT_HOST),
            port=_env_number("RELAY_PORT", port, int),
            ws_path=env.get("RELAY_WS_PATH", DEFAULT_WS_PATH),
            keepalive_interval_s=_env_number(
                "RELAY_KEEPALIVE_S", env.get("RELAY_KEEPALIVE_S", str(DEFAULT_KEEPALIVE_S))
            ),
            status_interval_s=_env_number(
                "RELAY_STATUS_INTERVAL_S",
                env.get("RELAY_STATUS_INTERVAL_S", str(DEFAULT_STATUS_INTERVAL_S)),
            ),
            shutdown_timeout_s=_env_number(
                "RELAY_SHUTDOWN_TIMEOUT_S",
                env.get("RELAY_SHUTDOWN_TIMEOUT_S", str(DEFAULT_SHUTDOWN_TIMEOUT_S)),
            ),
            max_message_bytes=_env_number(
                "RELAY_MAX_MESSAGE_BYTES",
                env.get("RELAY_MAX_MESSAGE_BYTES", str(DEFAULT_MAX_MESSAGE_BYTES)),
                int,
            ),
            announce_presence=_env_bool(
                "RELAY_ANNOUNCE_PRESENCE", env.get("RELAY_ANNOUNCE_PRESENCE", "true")
            ),
            log_level=env.get("RELAY_LOG_LEVEL", "INFO").upper(),
            uvloop=_env_bool("UVLOOP", env.get("UVLOOP", "")),
        )
        return settings.validate()

    def validate(self) -> "Settings":
        if not (0 <= self.port <= 65535):
            raise ConfigError(f"port must be between 0 and 65535, got {self.port}")
        if not self.ws_path.startswith("/"):
            raise ConfigError(f"ws_path must start with '/', got {self.ws_path!r}")
        if self.keepalive_interval_s <= 0:
            raise ConfigError("keepalive interval must be positive")
        if self.status_interval_s < 0:
            raise ConfigError("status interval cannot be negative")
        if self.shutdown_timeout_s <= 0:
            raise ConfigError("shutdown timeout must be positive")
        if self.max_message_bytes <= 0:
            raise ConfigError("max message size must be positive")
        return self


__all__ = ["Settings"]
