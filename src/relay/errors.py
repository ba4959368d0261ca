"""Exception hierarchy for the relay."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for relay failures."""


class ConfigError(RelayError, ValueError):
    """Raised when a configuration value is missing or out of range."""


class ListenerBindError(RelayError):
    """The listening socket could not be bound."""


class LifecycleError(RelayError):
    """An invalid lifecycle transition was requested."""


class ChannelClosedError(RelayError):
    """A send was attempted on a channel that is no longer open."""

    def __init__(self, peer_id: str):
        super().__init__(f"channel for {peer_id} is not open")
        self.peer_id = peer_id


__all__ = [
    "RelayError",
    "ConfigError",
    "ListenerBindError",
    "LifecycleError",
    "ChannelClosedError",
]
