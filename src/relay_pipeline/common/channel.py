"""Bounded FIFO between the subscription task and the batching loop."""

import asyncio

from core.errors.exceptions import ChannelClosedError
from relay_pipeline.common.types import InboundRecord


class InboundChannel:
    """
    Bounded queue of inbound records.

    A full channel blocks ``put``, which is the only flow control between
    the bus and the accumulator. After ``close`` no new records are
    accepted; records already queued can still be read or discarded.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"channel capacity must be >= 1, got {capacity}")
        self._queue: asyncio.Queue[InboundRecord] = asyncio.Queue(maxsize=capacity)
        self._capacity = capacity
        self._closed = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    def full(self) -> bool:
        return self._queue.full()

    async def put(self, record: InboundRecord) -> None:
        if self._closed:
            raise ChannelClosedError("Inbound channel is closed")
        await self._queue.put(record)

    async def get(self) -> InboundRecord:
        """Next record in arrival order; waits while the channel is empty."""
        if self._closed and self._queue.empty():
            raise ChannelClosedError("Inbound channel is closed and empty")
        return await self._queue.get()

    def close(self) -> None:
        self._closed = True

    def discard_pending(self) -> int:
        """Drop queued records without acknowledging them. Returns the count."""
        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return dropped
            dropped += 1
