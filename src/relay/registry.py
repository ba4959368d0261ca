"""Connection registry: the only state shared between peer tasks."""

from __future__ import annotations

import itertools
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .peer import Channel, Peer

log = logging.getLogger(__name__)


@dataclass
class RegistryStatus:
    currently_connected: int
    total_connections: int
    messages_sent: int
    messages_received: int
    uptime_seconds: int
    peers: List[Dict[str, Any]] = field(default_factory=list)


class Registry:
    """Tracks live peers by id.

    Every mutation and every snapshot runs under one lock, so iteration never
    observes a half-applied insert or remove. Counter reads are best effort.
    """

    def __init__(self):
        self._peers: Dict[str, Peer] = {}
        self._lock = threading.Lock()
        self._seq = itertools.count(1)
        self.total_connections = 0
        self.messages_sent = 0
        self.messages_received = 0
        self.started_at = datetime.now(timezone.utc)
        self._started_monotonic = time.monotonic()

    def _new_id(self) -> str:
        # the sequence alone keeps ids unique; the rest keeps them opaque
        millis = int(time.time() * 1000)
        return f"client_{millis}_{next(self._seq)}_{secrets.token_hex(3)}"

    def insert(
        self, channel: Channel, remote_address: str, user_agent: Optional[str] = None
    ) -> str:
        with self._lock:
            peer_id = self._new_id()
            self._peers[peer_id] = Peer(
                peer_id,
                channel,
                remote_address,
                user_agent=user_agent,
                on_sent=self.record_sent,
            )
            self.total_connections += 1
            current = len(self._peers)
        log.info("Registered %s from %s (%d connected)", peer_id, remote_address, current)
        return peer_id

    def remove(self, peer_id: str) -> Optional[Peer]:
        with self._lock:
            peer = self._peers.pop(peer_id, None)
            current = len(self._peers)
        if peer is None:
            return None
        peer.release()
        log.info("Removed %s (%d connected)", peer_id, current)
        return peer

    def get(self, peer_id: str) -> Optional[Peer]:
        with self._lock:
            return self._peers.get(peer_id)

    def snapshot(self) -> List[Peer]:
        with self._lock:
            return list(self._peers.values())

    def for_each(self, visitor: Callable[[Peer], Any]) -> None:
        for peer in self.snapshot():
            visitor(peer)

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._peers)

    def size(self) -> int:
        with self._lock:
            return len(self._peers)

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, peer_id: object) -> bool:
        with self._lock:
            return peer_id in self._peers

    def record_sent(self, count: int = 1) -> None:
        with self._lock:
            self.messages_sent += count

    def record_received(self, peer: Optional[Peer] = None) -> None:
        with self._lock:
            self.messages_received += 1
        if peer is not None:
            peer.messages_received += 1

    def uptime_seconds(self) -> int:
        return int(time.monotonic() - self._started_monotonic)

    def status(self) -> RegistryStatus:
        peers = self.snapshot()
        return RegistryStatus(
            currently_connected=len(peers),
            total_connections=self.total_connections,
            messages_sent=self.messages_sent,
            messages_received=self.messages_received,
            uptime_seconds=self.uptime_seconds(),
            peers=[peer.summary() for peer in peers],
        )


__all__ = ["Registry", "RegistryStatus"]
