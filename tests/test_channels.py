# tests/test_channels.py
"""Tests for per-session stream channels and their registry."""

import pytest

from ragchat.src.core.channels import StreamChannel, StreamChannelRegistry
from ragchat.src.core.exceptions import ChannelBusyError
from ragchat.src.core.models import StreamEvent


class TestStreamChannel:
    @pytest.mark.asyncio
    async def test_iteration_stops_after_terminal(self):
        channel = StreamChannel("s1")
        channel.publish(StreamEvent.of_token("a"))
        channel.publish(StreamEvent.of_token("b"))
        channel.publish(StreamEvent.end())

        events = [event async for event in channel]

        assert [e.kind for e in events] == ["token", "token", "end"]

    def test_events_after_terminal_are_refused(self):
        channel = StreamChannel("s1")
        assert channel.publish(StreamEvent.failure(500, "boom")) is True
        assert channel.publish(StreamEvent.of_token("late")) is False
        assert channel.publish(StreamEvent.end()) is False
        assert channel._queue.qsize() == 1

    def test_close_drops_pending_and_future_events(self):
        channel = StreamChannel("s1")
        channel.publish(StreamEvent.of_token("a"))
        channel.close()

        assert channel.closed
        assert channel._queue.empty()
        assert channel.publish(StreamEvent.of_token("b")) is False
        assert channel._queue.empty()

    def test_close_is_idempotent(self):
        channel = StreamChannel("s1")
        channel.close()
        channel.close()
        assert channel.closed


class TestStreamEventWireShape:
    def test_token(self):
        assert StreamEvent.of_token("hi").to_dict() == {"token": "hi"}

    def test_end(self):
        assert StreamEvent.end().to_dict() == {"end": True}

    def test_error(self):
        assert StreamEvent.failure(500, "boom").to_dict() == {"error": {"status": 500, "error": "boom"}}


class TestStreamChannelRegistry:
    def test_open_twice_while_live_is_busy(self):
        registry = StreamChannelRegistry()
        registry.open("s1")

        with pytest.raises(ChannelBusyError) as excinfo:
            registry.open("s1")
        assert excinfo.value.status_code == 409

    def test_distinct_sessions_are_independent(self):
        registry = StreamChannelRegistry()
        a = registry.open("a")
        b = registry.open("b")
        assert a is not b
        assert len(registry) == 2

    def test_close_releases_session(self):
        registry = StreamChannelRegistry()
        registry.open("s1")
        registry.close("s1")
        registry.close("s1")

        assert "s1" not in registry
        assert registry.open("s1") is not None

    def test_reopen_after_terminal_replaces_channel(self):
        registry = StreamChannelRegistry()
        old = registry.open("s1")
        old.publish(StreamEvent.end())

        new = registry.open("s1")

        assert new is not old
        assert old.closed
        assert registry.get("s1") is new

    def test_stale_close_never_touches_newer_channel(self):
        registry = StreamChannelRegistry()
        old = registry.open("s1")
        old.publish(StreamEvent.end())
        new = registry.open("s1")

        registry.close("s1", old)

        assert not new.closed
        assert registry.get("s1") is new

    def test_late_publish_to_old_channel_never_reaches_new_one(self):
        registry = StreamChannelRegistry()
        old = registry.open("s1")
        old.publish(StreamEvent.end())
        new = registry.open("s1")

        old.publish(StreamEvent.of_token("late"))

        assert new._queue.empty()

    def test_publish_by_session_id(self):
        registry = StreamChannelRegistry()
        channel = registry.open("s1")

        assert registry.publish("s1", StreamEvent.of_token("x")) is True
        assert registry.publish("unknown", StreamEvent.of_token("x")) is False
        assert channel._queue.qsize() == 1
