"""Response and request bodies for the HTTP surface."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class PeerSummary(BaseModel):
    peer_id: str
    remote_address: str
    name: Optional[str] = None
    connected_at: datetime
    last_activity: datetime
    messages_received: int = 0


class RelayStats(BaseModel):
    currently_connected: int
    total_connections: int
    messages_sent: int
    messages_received: int
    uptime_seconds: int
    peers: List[PeerSummary]


class ServerInfo(BaseModel):
    name: str
    version: str
    status: str
    port: int
    ws_path: str
    stats: RelayStats


class StatusResponse(BaseModel):
    status: str
    clients: int
    uptime: int


class MessageRequest(BaseModel):
    message: str = Field(min_length=1, max_length=4096)


class BroadcastResponse(BaseModel):
    ok: bool
    delivered: int


class SendResponse(BaseModel):
    ok: bool
    peer_id: str
