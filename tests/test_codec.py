import orjson
import pytest

from relay.codec import Envelope, MessageType, parse, serialize, utc_now_iso


def test_parse_known_types():
    envelope = parse('{"type": "ping", "timestamp": "T0"}')
    assert envelope.kind is MessageType.PING
    assert envelope.type == "ping"
    assert envelope.timestamp == "T0"
    assert envelope.payload == {}

    info = parse(b'{"type": "window_info", "windowTitle": "Notepad", "processName": "notepad.exe"}')
    assert info.kind is MessageType.WINDOW_INFO
    assert info.payload == {"windowTitle": "Notepad", "processName": "notepad.exe"}


def test_unrecognized_or_missing_type_is_unknown():
    assert parse('{"type": "dance"}').kind is MessageType.UNKNOWN
    assert parse('{"message": "no type"}').kind is MessageType.UNKNOWN
    assert parse('{"type": null}').kind is MessageType.UNKNOWN
    assert parse('{"type": 7}').kind is MessageType.UNKNOWN
    assert parse('{"type": ["ping"]}').kind is MessageType.UNKNOWN


@pytest.mark.parametrize(
    "raw",
    [
        "",
        b"",
        "hello",
        "{not json",
        b"\xff\xfe\x00garbage",
        '{"type": "ping"',
        "\ud800 lone surrogate",
        "42",
        "[1, 2, 3]",
        "null",
        '"quoted"',
        None,
    ],
)
def test_parse_never_fails(raw):
    envelope = parse(raw)
    assert isinstance(envelope, Envelope)
    assert envelope.kind is MessageType.TEXT
    assert isinstance(envelope.payload["content"], str)
    # whatever came in can be echoed back out
    serialize({"type": "echo", "originalMessage": envelope.to_dict()})


def test_raw_text_falls_back_to_text_envelope():
    envelope = parse("hello")
    assert envelope.to_dict() == {"type": "text", "content": "hello"}


def test_invalid_utf8_is_replaced():
    envelope = parse(b"abc\xff")
    assert envelope.payload["content"] == "abc\ufffd"


def test_serialize_stamps_fresh_timestamp_and_sorts_keys():
    data = serialize({"type": "pong", "timestamp": "stale", "b": 1, "a": 2})
    decoded = orjson.loads(data)
    assert decoded["type"] == "pong"
    assert decoded["timestamp"] != "stale"
    assert decoded["timestamp"].endswith("Z")
    assert list(decoded) == sorted(decoded)


def test_serialize_is_deterministic_apart_from_timestamp():
    first = orjson.loads(serialize({"type": "echo", "z": [1, 2], "a": {"y": 1, "x": 2}}))
    second = orjson.loads(serialize({"a": {"x": 2, "y": 1}, "z": [1, 2], "type": "echo"}))
    first.pop("timestamp")
    second.pop("timestamp")
    assert first == second


def test_serialize_requires_type():
    with pytest.raises(ValueError):
        serialize({"message": "untyped"})
    with pytest.raises(ValueError):
        serialize({"type": ""})


def test_serialize_envelope():
    envelope = parse('{"type": "custom", "value": 1, "timestamp": "T0"}')
    decoded = orjson.loads(serialize(envelope))
    assert decoded["type"] == "custom"
    assert decoded["value"] == 1
    assert decoded["timestamp"] != "T0"


def test_utc_now_iso_format():
    stamp = utc_now_iso()
    assert stamp.endswith("Z")
    assert "T" in stamp
    assert len(stamp.split(".")[-1]) == 4  # three millisecond digits plus "Z"


def test_integers_wider_than_64_bits_decode_as_floats():
    envelope = parse('{"type": "custom", "n": 18446744073709551616}')
    assert envelope.kind is MessageType.UNKNOWN
    assert isinstance(envelope.payload["n"], float)
    assert envelope.payload["n"] == float(2**64)
    assert parse('{"type": "custom", "n": 9223372036854775807}').payload["n"] == 2**63 - 1
