"""Relay lifecycle: peer sessions, startup state and graceful shutdown."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from . import __version__, codec
from .broadcaster import Broadcaster
from .config import Settings
from .dispatcher import Dispatcher
from .errors import ChannelClosedError, LifecycleError
from .keepalive import Clock, KeepaliveScheduler, SystemClock
from .peer import CLOSE_NORMAL, CLOSE_TRY_AGAIN_LATER, Channel, Peer
from .registry import Registry

log = logging.getLogger(__name__)

SERVER_NAME = "agent-relay"
SHUTDOWN_REASON = "Server shutting down"


class State(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


_TRANSITIONS = {
    State.STOPPED: {State.STARTING, State.RUNNING},
    State.STARTING: {State.RUNNING, State.STOPPED},
    State.RUNNING: {State.STOPPING},
    State.STOPPING: {State.STOPPED},
}


def frame_size(raw: Union[str, bytes]) -> int:
    """Size of a frame in bytes as it travelled on the wire."""

    if isinstance(raw, str):
        return len(raw.encode("utf-8", "surrogatepass"))
    return len(raw)


class Relay:
    """Owns the registry and every component that acts on it."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        registry: Optional[Registry] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or Settings()
        self.clock = clock or SystemClock()
        self.registry = registry or Registry()
        self.broadcaster = Broadcaster(self.registry)
        self.dispatcher = Dispatcher(self.broadcaster)
        self.keepalive = KeepaliveScheduler(self.settings.keepalive_interval_s, self.clock)
        self.state = State.STOPPED
        self._terminated = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._stopped = asyncio.Event()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    def _transition(self, target: State) -> None:
        if self._terminated or target not in _TRANSITIONS[self.state]:
            raise LifecycleError(f"cannot move from {self.state.value} to {target.value}")
        log.debug("Relay %s -> %s", self.state.value, target.value)
        self.state = target

    def begin_startup(self) -> None:
        self._transition(State.STARTING)

    def abort_startup(self) -> None:
        """Startup failed before the relay ever ran; the relay is now terminal."""

        self._transition(State.STOPPED)
        self._terminated = True
        self._stopped.set()

    def start(self) -> None:
        self._transition(State.RUNNING)
        log.info("Relay running, accepting peers on %s", self.settings.ws_path)

    @property
    def accepting(self) -> bool:
        return self.state is State.RUNNING

    # ------------------------------------------------------------------
    # Peers
    # ------------------------------------------------------------------
    def welcome(self, peer_id: str) -> Dict[str, Any]:
        return {
            "type": "welcome",
            "clientId": peer_id,
            "message": "Connected to relay",
            "serverInfo": {"name": SERVER_NAME, "version": __version__},
        }

    async def serve_peer(
        self,
        channel: Channel,
        remote_address: str,
        user_agent: Optional[str] = None,
    ) -> Optional[str]:
        """Run one peer session to completion and return its id.

        Inbound frames are handled strictly one after another. The session
        ends when the channel reports a close, a transport error occurs, or the
        task is cancelled during shutdown. In every case the peer is removed
        from the registry, which also cancels its keepalive.
        """

        if not self.accepting:
            log.info("Refusing %s: relay is %s", remote_address, self.state.value)
            await channel.close(CLOSE_TRY_AGAIN_LATER, "Server not accepting connections")
            return None

        peer_id = self.registry.insert(channel, remote_address, user_agent=user_agent)
        peer = self.registry.get(peer_id)
        peer.task = asyncio.current_task()
        self._idle.clear()
        try:
            await peer.send_json(self.welcome(peer_id))
            if self.settings.announce_presence:
                await self.broadcaster.broadcast(
                    {"type": "broadcast", "message": f"Client {peer_id} connected", "from": "server"},
                    exclude=peer_id,
                )
            self.keepalive.arm(peer)
            while True:
                raw = await channel.receive()
                if raw is None:
                    break
                await self._handle(peer, raw)
        except ChannelClosedError:
            log.info("Channel for %s closed while sending", peer_id)
        except Exception:
            log.exception("Transport error on %s", peer_id)
        finally:
            self.registry.remove(peer_id)
            if not len(self.registry):
                self._idle.set()
        log.info(
            "%s disconnected (code %s)", peer_id, getattr(channel, "close_code", None)
        )
        if self.accepting and self.settings.announce_presence:
            await self.broadcaster.broadcast(
                {"type": "broadcast", "message": f"Client {peer_id} disconnected", "from": "server"}
            )
        return peer_id

    async def _handle(self, peer: Peer, raw: Union[str, bytes]) -> None:
        self.registry.record_received(peer)
        size = frame_size(raw)
        if size > self.settings.max_message_bytes:
            log.warning("Dropping %d byte message from %s", size, peer.peer_id)
            peer.touch()
            await peer.send_json(
                {
                    "type": "error",
                    "message": "Message too large",
                    "limit": self.settings.max_message_bytes,
                }
            )
            return

        envelope = codec.parse(raw)
        log.debug("Message from %s: %s", peer.peer_id, envelope.to_dict())
        try:
            await self.dispatcher.route(peer, envelope)
        except ChannelClosedError:
            raise
        except Exception as exc:
            log.exception("Failed to process message from %s", peer.peer_id)
            await peer.send_json(
                {"type": "error", "message": "Failed to process message", "error": str(exc)}
            )

    async def send_to(self, peer_id: str, message: str) -> bool:
        peer = self.registry.get(peer_id)
        if peer is None or not peer.is_open:
            return False
        try:
            await peer.send_json(
                {"type": "message", "message": message, "to": peer_id, "from": "server"}
            )
        except ChannelClosedError:
            return False
        return True

    async def announce(self, message: str, exclude: Optional[str] = None) -> int:
        return await self.broadcaster.broadcast(
            {"type": "broadcast", "message": message, "from": "server"}, exclude=exclude
        )

    # ------------------------------------------------------------------
    # Background reporting
    # ------------------------------------------------------------------
    async def report_status(self) -> None:
        interval = self.settings.status_interval_s
        if interval <= 0:
            return
        while True:
            await self.clock.sleep(interval)
            peers = self.registry.snapshot()
            if not peers:
                continue
            log.info("Status: %d client(s) connected", len(peers))
            for peer in peers:
                online = (datetime.now(timezone.utc) - peer.connected_at).total_seconds()
                log.info("  %s: %ds online", peer.peer_id, int(online))

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------
    async def shutdown(self) -> None:
        """Notify peers, close them, and wait for the registry to drain.

        Calling it again while a shutdown is in progress waits for that
        shutdown instead of starting another one.
        """

        if self.state is State.STOPPING or self._terminated:
            log.info("Shutdown already in progress")
            await self._stopped.wait()
            return
        if self.state is not State.RUNNING:
            # never ran, nothing to drain
            self.state = State.STOPPED
            self._terminated = True
            self._stopped.set()
            return

        self._transition(State.STOPPING)
        peers = self.registry.snapshot()
        log.info("Shutting down, closing %d peer(s)", len(peers))
        await self.announce(SHUTDOWN_REASON)
        for peer in peers:
            try:
                await peer.close(CLOSE_NORMAL, SHUTDOWN_REASON)
            except Exception as exc:
                log.warning("Closing %s failed: %s", peer.peer_id, exc)

        try:
            await asyncio.wait_for(self._idle.wait(), self.settings.shutdown_timeout_s)
        except asyncio.TimeoutError:
            await self._force_close()

        self._transition(State.STOPPED)
        self._terminated = True
        self._stopped.set()
        log.info("Relay stopped")

    async def _force_close(self) -> None:
        leftovers = self.registry.snapshot()
        log.warning("Drain timed out, cancelling %d peer task(s)", len(leftovers))
        tasks = []
        for peer in leftovers:
            if peer.task is not None and not peer.task.done():
                peer.task.cancel()
                tasks.append(peer.task)
            self.registry.remove(peer.peer_id)
        self._idle.set()
        if tasks:
            await asyncio.wait(tasks, timeout=1.0)


__all__ = ["Relay", "State", "SERVER_NAME", "SHUTDOWN_REASON"]
