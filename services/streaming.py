# services/streaming.py
"""Cancellable event channel between the chat orchestrator and the SSE transport"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional

from config import settings
from core.domain import EventType

logger = logging.getLogger(settings.LOGGER_NAME)


class ChannelClosed(Exception):
    """Raised to the producer once the consumer has gone away."""


@dataclass
class ChatEvent:
    type: EventType
    data: Dict[str, Any] = field(default_factory=dict)

    def to_sse(self) -> str:
        return f"event: {self.type.value}\ndata: {json.dumps(self.data, default=str)}\n\n"


_END = object()


class EventChannel:
    """
    Bounded, ordered queue of ChatEvents.

    The producer calls send() and finally close(). The consumer iterates
    the channel; when it stops early (client disconnect) it calls cancel(),
    after which send() raises ChannelClosed so the producer can stop pulling
    from the generation stream.
    """

    def __init__(self, maxsize: int = settings.STREAM_QUEUE_SIZE):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._cancelled = False
        self._closed = False
        self._drained = False
        self._end_marker: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def drained(self) -> bool:
        """True once the consumer has read every event up to close()."""
        return self._drained

    async def send(self, event_type: EventType, data: Optional[Dict[str, Any]] = None) -> None:
        if self._cancelled:
            raise ChannelClosed()
        if self._closed:
            raise RuntimeError("send() on a closed channel")
        await self._queue.put(ChatEvent(event_type, data or {}))

    def close(self) -> None:
        """Signal end of stream. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._cancelled:
            return
        try:
            self._queue.put_nowait(_END)
        except asyncio.QueueFull:
            # Consumer is behind; the marker lands once it has drained a slot
            self._end_marker = asyncio.get_running_loop().create_task(self._queue.put(_END))

    def cancel(self) -> None:
        """Consumer side: stop accepting events and unblock a waiting producer."""
        if self._cancelled:
            return
        self._cancelled = True
        if self._end_marker is not None:
            self._end_marker.cancel()
        while not self._queue.empty():
            self._queue.get_nowait()
        logger.info("[STREAM] Consumer cancelled the event channel")

    async def __aiter__(self) -> AsyncIterator[ChatEvent]:
        while True:
            item = await self._queue.get()
            if item is _END:
                self._drained = True
                return
            yield item


async def sse_stream(channel: EventChannel) -> AsyncIterator[str]:
    """Drain a channel as SSE frames; cancels the channel if the client goes away."""
    try:
        async for event in channel:
            yield event.to_sse()
    finally:
        if not channel.drained:
            channel.cancel()
