"""FastAPI application, WebSocket transport adapter and process entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import socket
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import List, Optional, Sequence, Union

import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket
from starlette.websockets import WebSocketState

from . import __version__
from .config import Settings
from .errors import ConfigError, ListenerBindError
from .lifecycle import SERVER_NAME, Relay
from .log import configure_logging
from .peer import CLOSE_NORMAL, Liveness
from .schemas import (
    BroadcastResponse,
    MessageRequest,
    PeerSummary,
    RelayStats,
    SendResponse,
    ServerInfo,
    StatusResponse,
)

log = logging.getLogger(__name__)


# ------------------------------------------------------------------------------
# Transport adapter
# ------------------------------------------------------------------------------
class WebSocketChannel:
    """Exposes a Starlette ``WebSocket`` as a relay ``Channel``."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.close_code: Optional[int] = None
        self._closing = False

    @property
    def liveness(self) -> Liveness:
        ws = self.websocket
        if (
            ws.client_state == WebSocketState.DISCONNECTED
            or ws.application_state == WebSocketState.DISCONNECTED
        ):
            return Liveness.CLOSED
        if self._closing:
            return Liveness.CLOSING
        if ws.client_state == WebSocketState.CONNECTED and ws.application_state == WebSocketState.CONNECTED:
            return Liveness.OPEN
        return Liveness.CLOSING

    async def send(self, data: str) -> None:
        await self.websocket.send_text(data)

    async def receive(self) -> Union[str, bytes, None]:
        message = await self.websocket.receive()
        if message["type"] == "websocket.disconnect":
            self.close_code = message.get("code", CLOSE_NORMAL)
            return None
        if message.get("text") is not None:
            return message["text"]
        return message.get("bytes") or b""

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        if self.liveness is Liveness.CLOSED:
            return
        self._closing = True
        await self.websocket.close(code=code, reason=reason or None)


# ------------------------------------------------------------------------------
# App scaffolding
# ------------------------------------------------------------------------------
def _stats(relay: Relay) -> RelayStats:
    status = relay.registry.status()
    return RelayStats(
        currently_connected=status.currently_connected,
        total_connections=status.total_connections,
        messages_sent=status.messages_sent,
        messages_received=status.messages_received,
        uptime_seconds=status.uptime_seconds,
        peers=[PeerSummary(**peer) for peer in status.peers],
    )


def create_app(settings: Optional[Settings] = None, relay: Optional[Relay] = None) -> FastAPI:
    """Build the ASGI app around one ``Relay``.

    The relay is reachable as ``app.state.relay``. It enters RUNNING when the
    lifespan starts and is shut down (notify, close, drain) when the lifespan
    ends.

    Settings are read when the factory is called, not at import, so it can be
    served directly with ``uvicorn relay.server:create_app --factory``.
    """

    if relay is None:
        relay = Relay(settings or Settings.from_env())
    settings = relay.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        relay.start()
        reporter = asyncio.create_task(relay.report_status())

        yield

        await relay.shutdown()
        reporter.cancel()

    app = FastAPI(title="agent-relay", version=__version__, lifespan=lifespan)
    app.state.relay = relay

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        client = request.client.host if request.client else "-"
        log.info("%s %s - %s", request.method, request.url.path, client)
        return await call_next(request)

    # --------------------------------------------------------------------------
    # WebSocket endpoint
    # --------------------------------------------------------------------------
    @app.websocket(settings.ws_path)
    async def peer_socket(websocket: WebSocket):
        await websocket.accept()
        client = websocket.client
        address = f"{client.host}:{client.port}" if client else "unknown"
        channel = WebSocketChannel(websocket)
        await relay.serve_peer(channel, address, user_agent=websocket.headers.get("user-agent"))
        if channel.liveness is Liveness.OPEN:
            await channel.close(CLOSE_NORMAL, "")

    # --------------------------------------------------------------------------
    # Status endpoints
    # --------------------------------------------------------------------------
    @app.get("/", response_model=ServerInfo)
    async def server_info() -> ServerInfo:
        return ServerInfo(
            name=SERVER_NAME,
            version=__version__,
            status=relay.state.value,
            port=settings.port,
            ws_path=settings.ws_path,
            stats=_stats(relay),
        )

    @app.get("/status", response_model=StatusResponse)
    async def status() -> StatusResponse:
        return StatusResponse(
            status="ok",
            clients=relay.registry.size(),
            uptime=relay.registry.uptime_seconds(),
        )

    @app.get("/peers", response_model=List[PeerSummary])
    async def list_peers() -> List[PeerSummary]:
        return [PeerSummary(**peer.summary()) for peer in relay.registry.snapshot()]

    # --------------------------------------------------------------------------
    # Server-originated messages
    # --------------------------------------------------------------------------
    @app.post("/broadcast", response_model=BroadcastResponse)
    async def broadcast(body: MessageRequest) -> BroadcastResponse:
        if not relay.accepting:
            raise HTTPException(status_code=503, detail="Relay is not running")
        delivered = await relay.announce(body.message)
        return BroadcastResponse(ok=True, delivered=delivered)

    @app.post("/peers/{peer_id}/message", response_model=SendResponse)
    async def send_message(peer_id: str, body: MessageRequest) -> SendResponse:
        if not await relay.send_to(peer_id, body.message):
            raise HTTPException(status_code=404, detail="Peer not connected")
        return SendResponse(ok=True, peer_id=peer_id)

    return app


# ------------------------------------------------------------------------------
# Process entry point
# ------------------------------------------------------------------------------
class RelayServer(uvicorn.Server):
    """uvicorn server whose termination signals drain the relay first.

    The first SIGINT/SIGTERM runs ``Relay.shutdown`` (notify, close, drain) and
    only then lets uvicorn close the listener. Repeated signals are ignored.
    """

    def __init__(self, config: uvicorn.Config, relay: Relay):
        super().__init__(config)
        self.relay = relay
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._shutdown_task: Optional[asyncio.Task] = None
        self._signalled = False

    async def serve(self, sockets: Optional[List[socket.socket]] = None) -> None:
        self._loop = asyncio.get_running_loop()
        await super().serve(sockets=sockets)

    def handle_exit(self, sig: int, frame) -> None:
        if self._signalled:
            log.info("Received %s again, shutdown already in progress", signal.Signals(sig).name)
            return
        self._signalled = True
        log.info("Received %s, shutting down", signal.Signals(sig).name)
        if self._loop is None:
            self.should_exit = True
            return
        self._loop.call_soon_threadsafe(self._begin_shutdown)

    def _begin_shutdown(self) -> None:
        self._shutdown_task = asyncio.create_task(self.relay.shutdown())
        self._shutdown_task.add_done_callback(self._finish_shutdown)

    def _finish_shutdown(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            log.error("Relay shutdown failed", exc_info=task.exception())
        self.should_exit = True


def bind_listener(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    try:
        return socket.create_server((host, port), family=family)
    except OSError as exc:
        raise ListenerBindError(f"cannot bind {host}:{port}: {exc}") from exc


def run(settings: Settings) -> int:
    """Serve until a termination signal; return the process exit status."""

    configure_logging(settings.log_level)
    app = create_app(settings)
    relay: Relay = app.state.relay
    relay.begin_startup()
    try:
        sock = bind_listener(settings.host, settings.port)
    except ListenerBindError as exc:
        log.error("Startup failed: %s", exc)
        relay.abort_startup()
        return 1

    host, port = sock.getsockname()[:2]
    log.info("%s %s listening on http://%s:%s", SERVER_NAME, __version__, host, port)
    log.info("WebSocket endpoint: ws://%s:%s%s", host, port, settings.ws_path)

    config = uvicorn.Config(
        app,
        log_config=None,
        log_level=settings.log_level.lower(),
        loop="uvloop" if settings.uvloop else "auto",
        lifespan="on",
    )
    server = RelayServer(config, relay)
    try:
        server.run(sockets=[sock])
    finally:
        sock.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="WebSocket relay for remote agents")
    parser.add_argument("--host", help="listen address (RELAY_HOST)")
    parser.add_argument("--port", type=int, help="listen port (RELAY_PORT)")
    parser.add_argument("--path", dest="ws_path", help="WebSocket endpoint path (RELAY_WS_PATH)")
    parser.add_argument(
        "--keepalive",
        dest="keepalive_interval_s",
        type=float,
        help="seconds between server pings (RELAY_KEEPALIVE_S)",
    )
    parser.add_argument("--log-level", dest="log_level", help="logging level (RELAY_LOG_LEVEL)")
    return parser


def load_settings(argv: Optional[Sequence[str]] = None) -> Settings:
    parser = build_parser()
    args = parser.parse_args(argv)
    overrides = {key: value for key, value in vars(args).items() if value is not None}
    if "log_level" in overrides:
        overrides["log_level"] = overrides["log_level"].upper()
    try:
        return replace(Settings.from_env(), **overrides).validate()
    except ConfigError as exc:
        parser.error(str(exc))


def main(argv: Optional[Sequence[str]] = None) -> int:
    return run(load_settings(argv))


__all__ = ["create_app", "main", "run", "RelayServer", "WebSocketChannel"]


if __name__ == "__main__":
    raise SystemExit(main())
