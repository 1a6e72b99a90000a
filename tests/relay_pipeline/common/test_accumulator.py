"""Tests for BatchAccumulator flush triggers and buffer ownership."""

import pytest

from relay_pipeline.common.accumulator import BatchAccumulator
from relay_pipeline.common.types import FlushTrigger


class RecordingFlush:
    def __init__(self):
        self.batches = []

    async def __call__(self, batch):
        self.batches.append(batch)


@pytest.fixture
def flush():
    return RecordingFlush()


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestSizeTrigger:

    def test_rejects_non_positive_batch_size(self, flush):
        with pytest.raises(ValueError):
            BatchAccumulator(batch_size=0, flush_callback=flush)

    @pytest.mark.asyncio
    async def test_flushes_exactly_at_batch_size(self, flush, make_records):
        accumulator = BatchAccumulator(batch_size=3, flush_callback=flush)
        records = make_records(3)

        for record in records[:2]:
            await accumulator.accept(record)
        assert flush.batches == []

        await accumulator.accept(records[2])

        assert len(flush.batches) == 1
        assert flush.batches[0].records == records
        assert flush.batches[0].trigger == FlushTrigger.SIZE
        assert accumulator.pending == 0

    @pytest.mark.asyncio
    async def test_batches_never_exceed_batch_size(self, flush, make_records):
        accumulator = BatchAccumulator(batch_size=4, flush_callback=flush)
        for record in make_records(10):
            await accumulator.accept(record)

        assert [len(b) for b in flush.batches] == [4, 4]
        assert accumulator.pending == 2

    @pytest.mark.asyncio
    async def test_preserves_arrival_order_across_batches(self, flush, make_records):
        accumulator = BatchAccumulator(batch_size=2, flush_callback=flush)
        records = make_records(5)
        for record in records:
            await accumulator.accept(record)
        await accumulator.on_timer()

        flushed = [r for batch in flush.batches for r in batch.records]
        assert flushed == records

    @pytest.mark.asyncio
    async def test_each_batch_gets_its_own_id(self, flush, make_records):
        accumulator = BatchAccumulator(batch_size=1, flush_callback=flush)
        for record in make_records(3):
            await accumulator.accept(record)

        ids = [batch.batch_id for batch in flush.batches]
        assert len(set(ids)) == 3
        assert all(len(batch_id) == 8 for batch_id in ids)


class TestTimerTrigger:

    @pytest.mark.asyncio
    async def test_timer_flushes_partial_buffer(self, flush, make_records):
        accumulator = BatchAccumulator(batch_size=10, flush_callback=flush)
        for record in make_records(3):
            await accumulator.accept(record)

        assert await accumulator.on_timer() is True

        assert len(flush.batches) == 1
        assert len(flush.batches[0]) == 3
        assert flush.batches[0].trigger == FlushTrigger.TIMER

    @pytest.mark.asyncio
    async def test_timer_with_empty_buffer_is_noop(self, flush):
        accumulator = BatchAccumulator(batch_size=10, flush_callback=flush)

        assert await accumulator.on_timer() is False
        assert flush.batches == []

    @pytest.mark.asyncio
    async def test_oldest_age_tracks_first_pending_record(self, flush, make_records):
        clock = FakeClock(100.0)
        accumulator = BatchAccumulator(batch_size=10, flush_callback=flush, clock=clock)
        assert accumulator.oldest_age_seconds is None

        first, second = make_records(2)
        await accumulator.accept(first)
        clock.now = 103.0
        await accumulator.accept(second)
        clock.now = 104.5

        assert accumulator.oldest_age_seconds == pytest.approx(4.5)

        await accumulator.on_timer()
        assert accumulator.oldest_age_seconds is None


class TestShutdownTrigger:

    @pytest.mark.asyncio
    async def test_shutdown_flushes_remaining_records(self, flush, make_records):
        accumulator = BatchAccumulator(batch_size=10, flush_callback=flush)
        for record in make_records(4):
            await accumulator.accept(record)

        assert await accumulator.on_shutdown() is True

        assert len(flush.batches) == 1
        assert flush.batches[0].trigger == FlushTrigger.SHUTDOWN
        assert len(flush.batches[0]) == 4

    @pytest.mark.asyncio
    async def test_shutdown_runs_at_most_once(self, flush, make_records):
        accumulator = BatchAccumulator(batch_size=10, flush_callback=flush)
        await accumulator.accept(make_records(1)[0])

        assert await accumulator.on_shutdown() is True
        assert await accumulator.on_shutdown() is False
        assert len(flush.batches) == 1

    @pytest.mark.asyncio
    async def test_shutdown_with_empty_buffer_does_not_flush(self, flush):
        accumulator = BatchAccumulator(batch_size=10, flush_callback=flush)

        assert await accumulator.on_shutdown() is False
        assert flush.batches == []
        assert accumulator.is_closed

    @pytest.mark.asyncio
    async def test_accept_after_shutdown_raises(self, flush, make_record):
        accumulator = BatchAccumulator(batch_size=10, flush_callback=flush)
        await accumulator.on_shutdown()

        with pytest.raises(RuntimeError, match="shut down"):
            await accumulator.accept(make_record())

    @pytest.mark.asyncio
    async def test_timer_after_shutdown_is_noop(self, flush, make_record):
        accumulator = BatchAccumulator(batch_size=10, flush_callback=flush)
        await accumulator.accept(make_record())
        await accumulator.on_shutdown()

        assert await accumulator.on_timer() is False
        assert len(flush.batches) == 1


class TestFlushCallbackFailure:

    @pytest.mark.asyncio
    async def test_buffer_is_swapped_even_if_callback_raises(self, make_records):
        async def failing_flush(batch):
            raise RuntimeError("sink down")

        accumulator = BatchAccumulator(batch_size=2, flush_callback=failing_flush)
        first, second = make_records(2)
        await accumulator.accept(first)

        with pytest.raises(RuntimeError, match="sink down"):
            await accumulator.accept(second)

        assert accumulator.pending == 0
        assert accumulator.batches_flushed == 1
