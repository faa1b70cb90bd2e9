"""Bounded alert stream between the fetch cycle and the encoder.

Unlike a dropping ring buffer, a full stream blocks the producer: slow
output throttles fetching instead of losing alerts. ``close()`` tells the
consumer that nothing more is coming; items already queued are still
delivered before ``get()`` reports the end of the stream.
"""

from __future__ import annotations

import asyncio

from ..models import Alert

DEFAULT_BUFFER_SIZE = 1024

_CLOSED = object()


class StreamClosedError(Exception):
    """Raised when putting onto a closed stream."""


class AlertStream:
    """FIFO, bounded, single-consumer stream of alerts."""

    def __init__(self, max_size: int = DEFAULT_BUFFER_SIZE) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_size)
        self._closed = False
        self._exhausted = False

    async def put(self, alert: Alert) -> None:
        """Queue an alert, waiting while the stream is full."""
        if self._closed:
            raise StreamClosedError("alert stream is closed")
        await self._queue.put(alert)

    async def get(self) -> Alert | None:
        """Next alert in order, or None once closed and drained."""
        if self._exhausted:
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            self._exhausted = True
            return None
        return item

    async def close(self) -> None:
        """Mark the end of the stream (waits for room for the end marker)."""
        if self._closed:
            return
        self._closed = True
        await self._queue.put(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    def full(self) -> bool:
        return self._queue.full()
