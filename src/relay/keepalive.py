"""Per-peer liveness probes."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional, Protocol

from .peer import Liveness, Peer

log = logging.getLogger(__name__)


class Clock(Protocol):
    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class KeepaliveScheduler:
    """Arms one recurring probe task per peer.

    The task handle is handed to the peer, and ``Registry.remove`` cancels it
    through ``Peer.release``. A fire that finds the peer no longer open ends
    the task without sending.
    """

    def __init__(self, interval: float, clock: Optional[Clock] = None):
        if interval <= 0:
            raise ValueError("keepalive interval must be positive")
        self.interval = interval
        self.clock = clock or SystemClock()

    def arm(self, peer: Peer) -> asyncio.Task:
        task = asyncio.create_task(self._run(peer), name=f"keepalive:{peer.peer_id}")
        peer.attach_keepalive(task)
        return task

    async def _run(self, peer: Peer) -> None:
        while True:
            await self.clock.sleep(self.interval)
            if peer.liveness is not Liveness.OPEN:
                log.debug("Keepalive for %s stopped (%s)", peer.peer_id, peer.liveness.value)
                return
            try:
                await peer.send_json({"type": "ping", "clientId": peer.peer_id})
            except Exception as exc:
                log.warning("Keepalive probe to %s failed: %s", peer.peer_id, exc)
                return
            log.debug("Ping sent to %s", peer.peer_id)


__all__ = ["Clock", "KeepaliveScheduler", "SystemClock"]
