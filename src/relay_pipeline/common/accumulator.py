"""Ordered pending buffer with size, timer and shutdown flush triggers."""

import logging
import time
import uuid
from collections.abc import Awaitable, Callable

from core.logging.setup import DEFAULT_LOGGER_NAME
from relay_pipeline.common.types import Batch, FlushTrigger, InboundRecord

FlushCallback = Callable[[Batch], Awaitable[None]]


class BatchAccumulator:
    """
    Collects records into batches and hands each batch to a flush callback.

    Owned by a single task: ``accept``, ``on_timer`` and ``on_shutdown`` must
    all be awaited from the same coroutine, which is what guarantees that
    only one flush is in flight. The buffer is swapped for a fresh list
    before the callback runs, so a batch is never handed over twice.

    Flush triggers:
        size:     the buffer reached ``batch_size`` on accept
        timer:    ``on_timer`` with a non-empty buffer
        shutdown: ``on_shutdown`` with a non-empty buffer (at most once)
    """

    def __init__(
        self,
        batch_size: int,
        flush_callback: FlushCallback,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.batch_size = batch_size
        self._flush_callback = flush_callback
        self._logger = (logger or logging.getLogger(DEFAULT_LOGGER_NAME)).getChild("accumulator")
        self._clock = clock

        self._buffer: list[InboundRecord] = []
        self._oldest_at: float | None = None
        self._closed = False
        self._flushing = False
        self._batches_flushed = 0

    @property
    def pending(self) -> int:
        return len(self._buffer)

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def batches_flushed(self) -> int:
        return self._batches_flushed

    @property
    def oldest_age_seconds(self) -> float | None:
        if self._oldest_at is None:
            return None
        return self._clock() - self._oldest_at

    async def accept(self, record: InboundRecord) -> None:
        if self._closed:
            raise RuntimeError("BatchAccumulator is shut down and no longer accepts records")

        if not self._buffer:
            self._oldest_at = self._clock()
        self._buffer.append(record)

        if len(self._buffer) >= self.batch_size:
            await self._flush(FlushTrigger.SIZE)

    async def on_timer(self) -> bool:
        """Flush a non-empty buffer. Returns True if a batch was flushed."""
        if self._closed or not self._buffer:
            return False
        await self._flush(FlushTrigger.TIMER)
        return True

    async def on_shutdown(self) -> bool:
        """Final flush; refuses further input. Only the first call does anything."""
        if self._closed:
            return False
        self._closed = True

        if not self._buffer:
            self._logger.debug("Shutdown with empty buffer, nothing to flush")
            return False

        await self._flush(FlushTrigger.SHUTDOWN)
        return True

    async def _flush(self, trigger: FlushTrigger) -> None:
        if self._flushing:
            raise RuntimeError("Flush already in progress")

        records, self._buffer = self._buffer, []
        self._oldest_at = None
        batch = Batch(records=records, batch_id=uuid.uuid4().hex[:8], trigger=trigger)

        self._logger.debug(
            "Flushing batch",
            extra={"batch_id": batch.batch_id, "batch_size": len(batch), "trigger": trigger.value},
        )

        self._flushing = True
        try:
            self._batches_flushed += 1
            await self._flush_callback(batch)
        finally:
            self._flushing = False
