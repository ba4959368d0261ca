"""Wire codec: raw frames to typed envelopes and back."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

import orjson


class MessageType(str, Enum):
    """Closed classification of inbound envelopes."""

    PING = "ping"
    SYSTEM_INFO = "system_info"
    WINDOW_INFO = "window_info"
    BROADCAST = "broadcast"
    IDENTIFICATION = "identification"
    TEXT = "text"
    UNKNOWN = "unknown"

    @classmethod
    def classify(cls, tag: object) -> "MessageType":
        if isinstance(tag, str):
            try:
                return cls(tag)
            except ValueError:
                return cls.UNKNOWN
        return cls.UNKNOWN


@dataclass(frozen=True)
class Envelope:
    """One inbound message. ``type`` is the tag exactly as the producer sent it."""

    type: Optional[Any]
    kind: MessageType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.type is not None:
            out["type"] = self.type
        out.update(self.payload)
        if self.timestamp is not None:
            out["timestamp"] = self.timestamp
        return out


def utc_now_iso() -> str:
    """ISO-8601 UTC timestamp with millisecond precision, e.g. ``2025-08-12T10:00:00.000Z``."""

    stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return stamp.replace("+00:00", "Z")


def _as_text(raw: Union[str, bytes, bytearray, memoryview]) -> str:
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return bytes(raw).decode("utf-8", errors="replace")
    # lone surrogates cannot be re-encoded later
    return raw.encode("utf-8", errors="replace").decode("utf-8")


def text_envelope(content: str) -> Envelope:
    return Envelope(type="text", kind=MessageType.TEXT, payload={"content": content})


def parse(raw: Union[str, bytes, bytearray, memoryview, None]) -> Envelope:
    """Decode a frame. Never raises: anything that is not a JSON object becomes a text envelope."""

    if raw is None:
        return text_envelope("")
    try:
        decoded = orjson.loads(raw)
    except (ValueError, TypeError):
        return text_envelope(_as_text(raw))

    if not isinstance(decoded, dict):
        return text_envelope(_as_text(raw))

    payload = dict(decoded)
    tag = payload.pop("type", None)
    timestamp = payload.pop("timestamp", None)
    return Envelope(
        type=tag,
        kind=MessageType.classify(tag),
        payload=payload,
        timestamp=timestamp,
    )


def serialize(message: Union[Envelope, Mapping[str, Any]]) -> str:
    """Encode an outbound message with sorted keys and a fresh ``timestamp``."""

    if isinstance(message, Envelope):
        body = message.to_dict()
    else:
        body = dict(message)
    if not isinstance(body.get("type"), str) or not body["type"]:
        raise ValueError("outbound message requires a string 'type'")
    body["timestamp"] = utc_now_iso()
    return orjson.dumps(body, option=orjson.OPT_SORT_KEYS, default=str).decode("utf-8")


__all__ = [
    "Envelope",
    "MessageType",
    "parse",
    "serialize",
    "text_envelope",
    "utc_now_iso",
]
