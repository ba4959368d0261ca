"""Manual test client that exercises the relay protocol.

Connects, identifies itself, then periodically reports a fake foreground
window and pings the server. Server pings are answered with a pong and every
inbound message is logged.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Any, Dict, Optional, Sequence

import orjson
import websockets

from . import codec
from .log import configure_logging

log = logging.getLogger(__name__)

DEFAULT_URL = "ws://localhost:8080/cli/ws"
WINDOW_INTERVAL_S = 5.0
PING_INTERVAL_S = 15.0


def identification(name: str) -> Dict[str, Any]:
    return {"type": "identification", "clientName": name, "clientType": "test_client"}


def window_info() -> Dict[str, Any]:
    return {
        "type": "window_info",
        "windowTitle": "Notepad - Untitled",
        "processName": "notepad.exe",
        "windowHandle": "0x12345678",
    }


def handle_server_message(raw: str) -> Optional[Dict[str, Any]]:
    """Log one server frame and return the reply to send, if any."""

    try:
        message = orjson.loads(raw)
    except orjson.JSONDecodeError:
        log.error("Undecodable frame from server: %r", raw)
        return None
    if not isinstance(message, dict):
        log.info("Received: %r", message)
        return None

    kind = message.get("type")
    if kind == "welcome":
        log.info("Welcome: %s (client id %s)", message.get("message"), message.get("clientId"))
    elif kind == "pong":
        log.info("Pong received (sent at %s)", message.get("originalTimestamp"))
    elif kind == "ping":
        log.info("Ping received from server")
        return {"type": "pong", "originalTimestamp": message.get("timestamp")}
    elif kind == "broadcast":
        log.info("Broadcast: %s", message.get("message"))
    elif kind == "echo":
        log.info("Echo: %s", message.get("originalMessage"))
    elif kind == "error":
        log.error("Server reported error: %s", message.get("message"))
    else:
        log.info("Received: %s", message)
    return None


async def _every(interval: float, ws, build) -> None:
    while True:
        await asyncio.sleep(interval)
        await ws.send(codec.serialize(build()))


async def run_client(
    url: str,
    name: str,
    window_interval: float = WINDOW_INTERVAL_S,
    ping_interval: float = PING_INTERVAL_S,
) -> int:
    sent = 0
    async with websockets.connect(url) as ws:
        log.info("Connected to %s as %s", url, name)
        await ws.send(codec.serialize(identification(name)))
        sent += 1
        tasks = [
            asyncio.create_task(_every(window_interval, ws, window_info)),
            asyncio.create_task(_every(ping_interval, ws, lambda: {"type": "ping"})),
        ]
        try:
            async for raw in ws:
                reply = handle_server_message(raw if isinstance(raw, str) else raw.decode("utf-8", "replace"))
                if reply is not None:
                    await ws.send(codec.serialize(reply))
                    sent += 1
        except websockets.ConnectionClosed as exc:
            log.info("Connection closed: %s", exc)
        finally:
            for task in tasks:
                task.cancel()
    log.info("Disconnected after sending %d direct message(s)", sent)
    return sent


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Relay test client")
    parser.add_argument("--url", default=DEFAULT_URL)
    parser.add_argument("--name", default="TestClient_PY")
    parser.add_argument("--window-interval", type=float, default=WINDOW_INTERVAL_S)
    parser.add_argument("--ping-interval", type=float, default=PING_INTERVAL_S)
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    try:
        asyncio.run(run_client(args.url, args.name, args.window_interval, args.ping_interval))
    except KeyboardInterrupt:
        log.info("Interrupted, closing client")
    except OSError as exc:
        log.error("Could not connect to %s: %s", args.url, exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
