from datetime import datetime, timezone

import pytest

from relay.broadcaster import Broadcaster
from relay.codec import MessageType, parse
from relay.dispatcher import Action, Dispatcher
from tests.conftest import FakeChannel


def _setup(registry, count=2):
    channels = [FakeChannel() for _ in range(count)]
    peers = [registry.get(registry.insert(ch, f"10.0.0.{i}:5000")) for i, ch in enumerate(channels)]
    return Dispatcher(Broadcaster(registry)), channels, peers


def test_every_message_type_has_a_handler(registry):
    dispatcher = Dispatcher(Broadcaster(registry))
    assert set(dispatcher._handlers) == set(MessageType)


@pytest.mark.asyncio
async def test_ping_replies_with_pong_carrying_original_timestamp(registry):
    dispatcher, (sender, other), (peer, _) = _setup(registry)
    action = await dispatcher.route(peer, parse('{"type": "ping", "timestamp": "T0"}'))
    assert action is Action.REPLY
    [pong] = sender.messages()
    assert pong["type"] == "pong"
    assert pong["originalTimestamp"] == "T0"
    assert pong["timestamp"] != "T0"
    assert other.sent == []


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", ["system_info", "window_info"])
async def test_info_messages_are_log_only(registry, kind):
    dispatcher, (sender, other), (peer, _) = _setup(registry)
    raw = '{"type": "%s", "data": {"os": "Windows 11", "windowTitle": "Notepad"}}' % kind
    action = await dispatcher.route(peer, parse(raw))
    assert action is Action.LOG
    assert sender.sent == [] and other.sent == []
    assert peer.metadata[kind]["windowTitle"] == "Notepad"


@pytest.mark.asyncio
async def test_window_info_without_data_records_top_level_fields(registry):
    dispatcher, _, (peer, _) = _setup(registry)
    raw = '{"type": "window_info", "windowTitle": "Notepad - Untitled", "processName": "notepad.exe"}'
    assert await dispatcher.route(peer, parse(raw)) is Action.LOG
    assert peer.metadata["window_info"]["processName"] == "notepad.exe"


@pytest.mark.asyncio
async def test_broadcast_reaches_others_but_not_sender(registry):
    dispatcher, channels, peers = _setup(registry, count=3)
    action = await dispatcher.route(peers[0], parse('{"type": "broadcast", "message": "hi"}'))
    assert action is Action.BROADCAST
    assert channels[0].sent == []
    for channel in channels[1:]:
        [message] = channel.messages()
        assert message["type"] == "broadcast"
        assert "hi" in message["message"]
        assert message["from"] == peers[0].peer_id


@pytest.mark.asyncio
async def test_text_fallback_is_echoed(registry):
    dispatcher, (sender, _), (peer, _) = _setup(registry)
    action = await dispatcher.route(peer, parse("hello"))
    assert action is Action.ECHO
    [echo] = sender.messages()
    assert echo["type"] == "echo"
    assert echo["originalMessage"] == {"type": "text", "content": "hello"}


@pytest.mark.asyncio
async def test_identification_records_name_and_echoes(registry):
    dispatcher, (sender, _), (peer, _) = _setup(registry)
    raw = '{"type": "identification", "clientName": "TestClient_JS", "clientType": "test_client"}'
    assert await dispatcher.route(peer, parse(raw)) is Action.ECHO
    assert peer.name == "TestClient_JS"
    assert sender.of_type("echo")[0]["originalMessage"]["clientName"] == "TestClient_JS"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw, expected",
    [
        ('{"type": "ping"}', Action.REPLY),
        ('{"type": "system_info"}', Action.LOG),
        ('{"type": "window_info"}', Action.LOG),
        ('{"type": "broadcast", "message": "x"}', Action.BROADCAST),
        ('{"type": "identification"}', Action.ECHO),
        ('{"type": "pong"}', Action.ECHO),
        ('{"type": "unknown"}', Action.ECHO),
        ('{"type": null}', Action.ECHO),
        ('{"no_type": true}', Action.ECHO),
        ('{"type": 12}', Action.ECHO),
        ("not json at all", Action.ECHO),
        ("", Action.ECHO),
    ],
)
async def test_dispatch_is_total(registry, raw, expected):
    dispatcher, (sender, other), (peer, _) = _setup(registry)
    action = await dispatcher.route(peer, parse(raw))
    assert action is expected
    replies = len(sender.sent)
    relayed = len(other.sent)
    if action is Action.LOG:
        assert (replies, relayed) == (0, 0)
    elif action is Action.BROADCAST:
        assert (replies, relayed) == (0, 1)
    else:
        assert (replies, relayed) == (1, 0)


@pytest.mark.asyncio
async def test_route_updates_last_activity(registry):
    dispatcher, _, (peer, _) = _setup(registry)
    stale = datetime(2000, 1, 1, tzinfo=timezone.utc)
    peer.last_activity = stale
    await dispatcher.route(peer, parse('{"type": "system_info"}'))
    assert peer.last_activity > stale
