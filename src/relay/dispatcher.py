"""Routing of inbound envelopes to their handler action."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Awaitable, Callable, Dict

from .broadcaster import Broadcaster
from .codec import Envelope, MessageType
from .peer import Peer

log = logging.getLogger(__name__)


class Action(str, Enum):
    """How an envelope was acknowledged. Exactly one per envelope."""

    REPLY = "reply"
    LOG = "log"
    BROADCAST = "broadcast"
    ECHO = "echo"


Handler = Callable[[Peer, Envelope], Awaitable[Action]]


class Dispatcher:
    def __init__(self, broadcaster: Broadcaster):
        self.broadcaster = broadcaster
        self._handlers: Dict[MessageType, Handler] = {
            MessageType.PING: self._on_ping,
            MessageType.SYSTEM_INFO: self._on_system_info,
            MessageType.WINDOW_INFO: self._on_window_info,
            MessageType.BROADCAST: self._on_broadcast,
            MessageType.IDENTIFICATION: self._on_identification,
            MessageType.TEXT: self._echo,
            MessageType.UNKNOWN: self._echo,
        }
        missing = set(MessageType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"no handler for message types: {sorted(m.value for m in missing)}")

    async def route(self, peer: Peer, envelope: Envelope) -> Action:
        peer.touch()
        return await self._handlers[envelope.kind](peer, envelope)

    async def _on_ping(self, peer: Peer, envelope: Envelope) -> Action:
        await peer.send_json({"type": "pong", "originalTimestamp": envelope.timestamp})
        return Action.REPLY

    async def _on_system_info(self, peer: Peer, envelope: Envelope) -> Action:
        data = envelope.payload.get("data", envelope.payload)
        peer.metadata["system_info"] = data
        log.info("System info from %s: %s", peer.peer_id, data)
        return Action.LOG

    async def _on_window_info(self, peer: Peer, envelope: Envelope) -> Action:
        info = envelope.payload.get("data", envelope.payload)
        peer.metadata["window_info"] = info
        if isinstance(info, dict):
            log.info(
                "Window on %s: %s (%s)",
                peer.peer_id,
                info.get("windowTitle"),
                info.get("processName"),
            )
        else:
            log.info("Window on %s: %s", peer.peer_id, info)
        return Action.LOG

    async def _on_broadcast(self, peer: Peer, envelope: Envelope) -> Action:
        text = envelope.payload.get("message", "")
        delivered = await self.broadcaster.broadcast(
            {"type": "broadcast", "message": f"{peer.peer_id}: {text}", "from": peer.peer_id},
            exclude=peer.peer_id,
        )
        log.info("Relayed broadcast from %s to %d peer(s)", peer.peer_id, delivered)
        return Action.BROADCAST

    async def _on_identification(self, peer: Peer, envelope: Envelope) -> Action:
        name = envelope.payload.get("clientName")
        if isinstance(name, str) and name:
            peer.name = name
        peer.metadata["identification"] = dict(envelope.payload)
        log.info(
            "%s identified as %s (%s)",
            peer.peer_id,
            name,
            envelope.payload.get("clientType"),
        )
        return await self._echo(peer, envelope)

    async def _echo(self, peer: Peer, envelope: Envelope) -> Action:
        await peer.send_json(
            {"type": "echo", "originalMessage": envelope.to_dict(), "from": "server"}
        )
        return Action.ECHO


__all__ = ["Action", "Dispatcher"]
