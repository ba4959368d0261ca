"""Peer handle: one live connection plus the metadata recorded against it."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Union

from . import codec
from .errors import ChannelClosedError


class Liveness(str, Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


# RFC 6455 close codes used by the relay
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_TRY_AGAIN_LATER = 1013


class Channel(Protocol):
    """Duplex message channel handed to the relay for each accepted peer."""

    @property
    def liveness(self) -> Liveness: ...

    async def send(self, data: str) -> None: ...

    async def receive(self) -> Union[str, bytes, None]:
        """Wait for the next frame. ``None`` means the peer closed the channel."""
        ...

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Peer:
    def __init__(
        self,
        peer_id: str,
        channel: Channel,
        remote_address: str,
        user_agent: Optional[str] = None,
        on_sent: Optional[Callable[[int], None]] = None,
    ):
        self.peer_id = peer_id
        self.channel = channel
        self.remote_address = remote_address
        self.user_agent = user_agent
        self.connected_at = _utcnow()
        self.last_activity = self.connected_at
        self.name: Optional[str] = None
        self.metadata: Dict[str, Any] = {}
        self.messages_received = 0
        self.task: Optional[asyncio.Task] = None
        self._keepalive: Optional[asyncio.Task] = None
        self._on_sent = on_sent
        self._lock = asyncio.Lock()

    @property
    def liveness(self) -> Liveness:
        return self.channel.liveness

    @property
    def is_open(self) -> bool:
        return self.liveness is Liveness.OPEN

    def touch(self) -> None:
        self.last_activity = _utcnow()

    async def send(self, data: str) -> None:
        """Write one pre-serialized frame; writes to one channel never interleave."""

        async with self._lock:
            if not self.is_open:
                raise ChannelClosedError(self.peer_id)
            await self.channel.send(data)
        if self._on_sent is not None:
            self._on_sent(1)

    async def send_json(self, message: Union[codec.Envelope, Mapping[str, Any]]) -> None:
        await self.send(codec.serialize(message))

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        if self.liveness is Liveness.CLOSED:
            return
        await self.channel.close(code, reason)

    def attach_keepalive(self, task: asyncio.Task) -> None:
        if self._keepalive is not None and not self._keepalive.done():
            self._keepalive.cancel()
        self._keepalive = task

    @property
    def keepalive(self) -> Optional[asyncio.Task]:
        return self._keepalive

    def release(self) -> None:
        """Cancel everything the peer owns besides its own handler task."""

        if self._keepalive is not None:
            self._keepalive.cancel()
            self._keepalive = None

    def summary(self) -> Dict[str, Any]:
        return {
            "peer_id": self.peer_id,
            "remote_address": self.remote_address,
            "name": self.name,
            "connected_at": self.connected_at,
            "last_activity": self.last_activity,
            "messages_received": self.messages_received,
        }

    def __repr__(self) -> str:
        return f"Peer({self.peer_id!r}, {self.remote_address!r}, {self.liveness.value})"


__all__ = [
    "Channel",
    "Liveness",
    "Peer",
    "CLOSE_NORMAL",
    "CLOSE_GOING_AWAY",
    "CLOSE_TRY_AGAIN_LATER",
]
