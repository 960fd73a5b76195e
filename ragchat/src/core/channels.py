"""
RagChat - Stream Channel Registry
==================================
Per-session publish/subscribe channels that carry streamed tokens from
the orchestrator to exactly one waiting consumer.

Lifecycle of a ``StreamChannel`` (one conversational turn):

    open ──► token* ──► exactly one terminal (end | error) ──► closed

* Events after the terminal one are refused.
* ``close()`` is idempotent.  A consumer that disconnects closes its
  channel; queued events are discarded and later publishes are dropped,
  while the producer may keep generating to completion.
* Channels are never reused: the registry hands out a fresh channel per
  turn and refuses to open a second one while a live channel exists for
  the same session.  A late publish aimed at an old channel can never
  reach a newer one because producers hold their own channel handle.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from itertools import count

from ragchat.src.core.exceptions import ChannelBusyError
from ragchat.src.core.models import StreamEvent
from ragchat.src.utils.logger import get_logger

logger = get_logger(__name__)

_channel_ids = count(1)


class StreamChannel:
    __slots__ = ("session_id", "channel_id", "_queue", "_terminated", "_closed", "_on_close")

    def __init__(self, session_id: str, on_close=None) -> None:
        self.session_id = session_id
        self.channel_id = next(_channel_ids)
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        self._terminated = False
        self._closed = False
        self._on_close = on_close

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: StreamEvent) -> bool:
        """
        Queue *event* for the consumer.

        Returns ``False`` when the event was dropped: after the terminal
        event, or after the consumer closed the channel.
        """
        if self._terminated:
            logger.warning("[STREAM] Dropping %s event after terminal event (session %s).", event.kind, self.session_id)
            return False
        if event.is_terminal:
            self._terminated = True
        if self._closed:
            return False
        self._queue.put_nowait(event)
        return True

    async def get(self) -> StreamEvent:
        return await self._queue.get()

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        """Yield events until (and including) the terminal one."""
        while True:
            event = await self._queue.get()
            yield event
            if event.is_terminal:
                return

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        dropped = self._queue.qsize()
        while not self._queue.empty():
            self._queue.get_nowait()
        if dropped:
            logger.info("[STREAM] Channel for session %s closed with %d undelivered event(s).", self.session_id, dropped)
        if self._on_close is not None:
            self._on_close(self)

    def __repr__(self) -> str:
        return f"StreamChannel(session='{self.session_id}', id={self.channel_id}, terminated={self._terminated}, closed={self._closed})"


class StreamChannelRegistry:
    """Owns at most one live ``StreamChannel`` per session id."""

    def __init__(self) -> None:
        self._channels: dict[str, StreamChannel] = {}

    def open(self, session_id: str) -> StreamChannel:
        current = self._channels.get(session_id)
        if current is not None and not current.closed:
            if not current.terminated:
                raise ChannelBusyError(session_id)
            # Previous turn finished but its consumer never closed the channel.
            current.close()

        channel = StreamChannel(session_id, on_close=self._release)
        self._channels[session_id] = channel
        logger.debug("[STREAM] Opened %r", channel)
        return channel

    def get(self, session_id: str) -> StreamChannel | None:
        return self._channels.get(session_id)

    def publish(self, session_id: str, event: StreamEvent) -> bool:
        channel = self._channels.get(session_id)
        if channel is None:
            logger.debug("[STREAM] No channel for session %s — %s event dropped.", session_id, event.kind)
            return False
        return channel.publish(event)

    def close(self, session_id: str, channel: StreamChannel | None = None) -> None:
        """
        Close the session's channel.  Safe to call any number of times.

        When *channel* is given, only that exact channel is closed, so a
        stale caller can never tear down a newer turn's channel.
        """
        current = self._channels.get(session_id)
        if channel is not None and current is not channel:
            channel.close()
            return
        if current is not None:
            current.close()

    def _release(self, channel: StreamChannel) -> None:
        if self._channels.get(channel.session_id) is channel:
            del self._channels[channel.session_id]
            logger.debug("[STREAM] Released %r", channel)

    def __len__(self) -> int:
        return len(self._channels)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._channels
