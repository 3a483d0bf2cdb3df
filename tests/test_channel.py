import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import asyncio
import json

import pytest

from channel import EventChannel, parse_envelope
from protocol import ENVELOPE_TYPE
from conftest import envelope


class TestParseEnvelope:
    def test_dict(self):
        assert parse_envelope(envelope(message="x"))["message"] == "x"

    def test_json_text_and_bytes(self):
        text = json.dumps(envelope(message="x"))
        assert parse_envelope(text)["message"] == "x"
        assert parse_envelope(text.encode())["message"] == "x"

    @pytest.mark.parametrize("message", [
        None,
        42,
        "not json",
        b"\xff\xfe",
        "[]",
        {},
        {"payload": {"kind": "script", "message": "x"}},
        {"type": "SOMETHING_ELSE", "payload": {"kind": "script", "message": "x"}},
        {"type": ENVELOPE_TYPE},
        {"type": ENVELOPE_TYPE, "payload": "script"},
        {"type": ENVELOPE_TYPE, "payload": ["x"]},
        {"type": [ENVELOPE_TYPE], "payload": {}},
    ])
    def test_malformed_returns_none(self, message):
        assert parse_envelope(message) is None

    def test_deeply_nested_json(self):
        assert parse_envelope("[" * 100000 + "]" * 100000) is None

    def test_custom_tag(self):
        msg = {"type": "OTHER", "payload": {"kind": "script"}}
        assert parse_envelope(msg, tag="OTHER") == {"kind": "script"}
        assert parse_envelope(msg) is None


class TestEventChannel:
    def test_only_tagged_messages_reach_subscribers(self):
        ch = EventChannel()
        got = []
        ch.subscribe(got.append)
        assert ch.deliver(envelope(message="real")) is True
        assert ch.deliver({"type": "nope", "payload": {"kind": "script", "message": "fake"}}) is False
        assert ch.deliver("garbage") is False
        assert [p["message"] for p in got] == ["real"]
        assert ch.stats() == {"received": 3, "accepted": 1, "rejected": 2}

    def test_subscriber_exception_contained(self):
        ch = EventChannel()
        got = []

        def broken(payload):
            raise RuntimeError("subscriber bug")

        ch.subscribe(broken)
        ch.subscribe(got.append)
        assert ch.deliver(envelope()) is True
        assert len(got) == 1

    def test_unsubscribe(self):
        ch = EventChannel()
        got = []
        ch.subscribe(got.append)
        ch.unsubscribe(got.append)
        ch.deliver(envelope())
        assert got == []

    def test_closed_channel_drops(self):
        ch = EventChannel()
        got = []
        ch.subscribe(got.append)
        ch.close()
        assert ch.deliver(envelope()) is False
        assert got == []

    @pytest.mark.asyncio
    async def test_pump_reads_lines_until_eof(self):
        ch = EventChannel()
        got = []
        ch.subscribe(got.append)
        reader = asyncio.StreamReader()
        reader.feed_data((json.dumps(envelope(message="one")) + "\n").encode())
        reader.feed_data(b"\n{broken json\n")
        reader.feed_data((json.dumps(envelope(message="two")) + "\n").encode())
        reader.feed_eof()
        await ch.pump(reader)
        assert [p["message"] for p in got] == ["one", "two"]
        assert ch.rejected == 1

    @pytest.mark.asyncio
    async def test_pump_survives_oversized_line(self):
        ch = EventChannel()
        got = []
        ch.subscribe(got.append)
        reader = asyncio.StreamReader(limit=512)
        reader.feed_data(b"x" * 4000 + b"\n")
        reader.feed_data((json.dumps(envelope(message="ok")) + "\n").encode())
        reader.feed_eof()
        await asyncio.wait_for(ch.pump(reader), 5)
        assert [p["message"] for p in got] == ["ok"]
        assert ch.rejected >= 1
