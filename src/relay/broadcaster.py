"""Fan-out delivery to every open peer."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Union

from . import codec
from .registry import Registry

log = logging.getLogger(__name__)


class Broadcaster:
    def __init__(self, registry: Registry):
        self.registry = registry

    async def broadcast(
        self,
        message: Union[codec.Envelope, Mapping[str, Any]],
        exclude: Optional[str] = None,
    ) -> int:
        """Send ``message`` to every open peer except ``exclude``; return the delivery count.

        Peers that are closing or closed are skipped but left in the registry,
        their own handler removes them. A failed send is logged and the loop
        moves on to the next peer.
        """

        data = codec.serialize(message)
        delivered = 0
        for peer in self.registry.snapshot():
            if peer.peer_id == exclude or not peer.is_open:
                continue
            try:
                await peer.send(data)
            except Exception as exc:
                log.warning("Broadcast to %s failed: %s", peer.peer_id, exc)
                continue
            delivered += 1
        log.debug("Broadcast %s delivered to %d peer(s)", data, delivered)
        return delivered


__all__ = ["Broadcaster"]
