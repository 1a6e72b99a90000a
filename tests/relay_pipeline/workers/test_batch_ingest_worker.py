"""
Tests for BatchIngestWorker: flush triggers, ack-after-commit and drain.

Uses the in-memory sink and a fake subscription; timer tests run on the
real clock with short periods.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiokafka.structs import ConsumerRecord, TopicPartition

from config.config import BusConfig
from relay_pipeline.common.consumer import KafkaSubscription
from relay_pipeline.common.health import HealthCheckServer
from relay_pipeline.common.lifecycle import LifecycleState
from relay_pipeline.workers.batch_ingest_worker import BatchIngestWorker
from relay_pipeline.writers.sink_writer import SinkWriter


async def wait_until(predicate, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


async def stop_worker(worker: BatchIngestWorker, task: asyncio.Task) -> None:
    worker.request_stop("test finished")
    await asyncio.wait_for(task, timeout=3.0)


class ReplayingConsumer:
    """Single-partition consumer double that honours seek()."""

    def __init__(self, tp, records):
        self.tp = tp
        self.records = records
        self.position = 0
        self.seeks: list[int] = []
        self.committed: dict = {}

    async def start(self):
        pass

    async def stop(self):
        pass

    def subscribe(self, **kwargs):
        pass

    async def getmany(self, timeout_ms=0, max_records=None):
        pending = [r for r in self.records if r.offset >= self.position]
        if not pending:
            await asyncio.sleep(0.005)
            return {}
        self.position = pending[-1].offset + 1
        return {self.tp: pending}

    def seek(self, tp, offset):
        self.seeks.append(offset)
        self.position = offset

    async def commit(self, offsets):
        self.committed = dict(offsets)


@pytest.fixture
def build_worker(memory_sink, test_logger):
    def _build(subscription, **kwargs) -> BatchIngestWorker:
        writer = SinkWriter(memory_sink, memory_sink.table_descriptor(), logger=test_logger)
        kwargs.setdefault("batch_timeout_seconds", 10.0)
        return BatchIngestWorker(subscription, writer, logger=test_logger, **kwargs)

    return _build


class TestFlushTriggers:

    @pytest.mark.asyncio
    async def test_size_trigger(self, build_worker, fake_subscription, make_records, memory_sink):
        records = make_records(7)
        worker = build_worker(fake_subscription(records), batch_size=3)

        task = asyncio.create_task(worker.start())
        await wait_until(lambda: worker.stats["records_received"] == 7)

        # Two full batches, one record still buffered
        assert memory_sink.batch_sizes == [3, 3]
        assert worker.accumulator.pending == 1

        await stop_worker(worker, task)
        assert memory_sink.batch_sizes == [3, 3, 1]

    @pytest.mark.asyncio
    async def test_time_trigger(self, build_worker, fake_subscription, make_records, memory_sink):
        worker = build_worker(
            fake_subscription(make_records(3)), batch_size=100, batch_timeout_seconds=0.05
        )

        task = asyncio.create_task(worker.start())
        await wait_until(lambda: memory_sink.batch_sizes == [3], timeout=1.0)
        assert worker.lifecycle.is_running

        await stop_worker(worker, task)
        assert memory_sink.batch_sizes == [3]

    @pytest.mark.asyncio
    async def test_no_empty_flush(self, build_worker, fake_subscription, memory_sink):
        worker = build_worker(fake_subscription([]), batch_size=10, batch_timeout_seconds=0.02)

        task = asyncio.create_task(worker.start())
        await asyncio.sleep(0.15)
        await stop_worker(worker, task)

        assert memory_sink.prepare_calls == 0
        assert memory_sink.batches == []

    @pytest.mark.asyncio
    async def test_size_flush_does_not_reset_timer(
        self, build_worker, make_records, memory_sink
    ):
        records = make_records(3)

        class LateSubscription:
            async def run(self, channel):
                await asyncio.sleep(0.3)
                for record in records:
                    await channel.put(record)
                await asyncio.Event().wait()

            async def commit_acked(self):
                return {}

            async def stop(self):
                pass

        worker = build_worker(LateSubscription(), batch_size=2, batch_timeout_seconds=0.5)
        task = asyncio.create_task(worker.start())

        # Size flush at ~0.3s; the grid tick at ~0.5s flushes the leftover.
        # A timer restarted by the size flush would not fire before ~0.8s.
        await asyncio.sleep(0.7)
        assert memory_sink.batch_sizes == [2, 1]

        await stop_worker(worker, task)

    @pytest.mark.asyncio
    async def test_batches_preserve_arrival_order(
        self, build_worker, fake_subscription, make_records, memory_sink
    ):
        records = make_records(10)
        worker = build_worker(fake_subscription(records), batch_size=4)

        task = asyncio.create_task(worker.start())
        await wait_until(lambda: worker.stats["records_received"] == 10)
        await stop_worker(worker, task)

        assert memory_sink.batch_sizes == [4, 4, 2]
        assert [row[3] for row in memory_sink.rows] == [r.sequence for r in records]


class TestAcknowledgement:

    @pytest.mark.asyncio
    async def test_every_written_record_acked_exactly_once(
        self, build_worker, fake_subscription, make_records
    ):
        records = make_records(6)
        subscription = fake_subscription(records)
        worker = build_worker(subscription, batch_size=3)

        task = asyncio.create_task(worker.start())
        await wait_until(lambda: worker.stats["batches_succeeded"] == 2)
        await stop_worker(worker, task)

        assert [r.ack.calls for r in records] == [1] * 6
        assert worker.stats["records_acked"] == 6
        # One offset commit per successful batch
        assert subscription.commit_calls == 2

    @pytest.mark.asyncio
    async def test_failed_batch_is_not_acked(
        self, build_worker, fake_subscription, make_records, memory_sink
    ):
        records = make_records(4)
        subscription = fake_subscription(records)
        memory_sink.fail_next_send(OSError("commit conflict"))
        worker = build_worker(subscription, batch_size=2)

        task = asyncio.create_task(worker.start())
        await wait_until(lambda: worker.stats["batches_succeeded"] == 1)
        await stop_worker(worker, task)

        assert [r.ack.calls for r in records] == [0, 0, 1, 1]
        assert worker.stats["batches_failed"] == 1
        assert worker.stats["records_failed"] == 2
        # Not retried in place; the subscription is asked to fetch it again
        assert memory_sink.prepare_calls == 2
        assert subscription.redelivered == [(records[:2], False)]

    @pytest.mark.asyncio
    async def test_loop_survives_consecutive_failures(
        self, build_worker, fake_subscription, make_records, memory_sink
    ):
        records = make_records(12)
        memory_sink.fail_next_send(OSError("store unavailable"), times=5)
        worker = build_worker(fake_subscription(records), batch_size=2)

        task = asyncio.create_task(worker.start())
        await wait_until(lambda: worker.stats["batches_succeeded"] == 1)

        assert worker.lifecycle.is_running
        assert worker.stats["batches_failed"] == 5

        await stop_worker(worker, task)
        assert [r.ack.calls for r in records] == [0] * 10 + [1, 1]

    @pytest.mark.asyncio
    async def test_skipped_records_are_not_acked(
        self, build_worker, fake_subscription, make_record, memory_sink
    ):
        records = [make_record(), make_record(payload=None), make_record()]
        subscription = fake_subscription(records)
        worker = build_worker(subscription, batch_size=3)

        task = asyncio.create_task(worker.start())
        await wait_until(lambda: worker.stats["batches_succeeded"] == 1)
        await stop_worker(worker, task)

        assert [r.ack.calls for r in records] == [1, 0, 1]
        assert memory_sink.batch_sizes == [2]
        assert worker.stats["records_skipped"] == 1
        assert subscription.redelivered == [([records[1]], True)]

    @pytest.mark.asyncio
    async def test_ack_failure_does_not_fail_batch(
        self, build_worker, fake_subscription, make_record, ack_counter
    ):
        records = [
            make_record(),
            make_record(ack=ack_counter(fail_with=RuntimeError("ack lost"))),
            make_record(),
        ]
        worker = build_worker(fake_subscription(records), batch_size=3)

        task = asyncio.create_task(worker.start())
        await wait_until(lambda: worker.stats["batches_succeeded"] == 1)
        await stop_worker(worker, task)

        assert worker.stats["records_acked"] == 2
        assert worker.stats["batches_failed"] == 0
        assert worker.acknowledger.ack_failures == 1


class TestShutdown:

    @pytest.mark.asyncio
    async def test_drain_flushes_and_acks_buffer(
        self, build_worker, fake_subscription, make_records, memory_sink
    ):
        records = make_records(5)
        subscription = fake_subscription(records)
        worker = build_worker(subscription, batch_size=100)

        task = asyncio.create_task(worker.start())
        await wait_until(lambda: worker.stats["records_received"] == 5)
        assert memory_sink.batches == []

        await stop_worker(worker, task)

        assert memory_sink.batch_sizes == [5]
        assert [r.ack.calls for r in records] == [1] * 5
        assert subscription.run_cancelled
        assert subscription.stop_calls == 1
        assert memory_sink.closed
        assert worker.lifecycle.state == LifecycleState.STOPPED

    @pytest.mark.asyncio
    async def test_drain_order(self, build_worker, fake_subscription, make_records, memory_sink):
        observed = {}

        class OrderedSubscription(fake_subscription):
            async def stop(self):
                observed["batches_at_stop"] = list(memory_sink.batch_sizes)
                observed["sink_closed_at_stop"] = memory_sink.closed
                await super().stop()

        worker = build_worker(OrderedSubscription(make_records(3)), batch_size=10)

        task = asyncio.create_task(worker.start())
        await wait_until(lambda: worker.stats["records_received"] == 3)
        await stop_worker(worker, task)

        # Final flush happens before the subscription stops; sink closes last
        assert observed == {"batches_at_stop": [3], "sink_closed_at_stop": False}
        assert memory_sink.closed

    @pytest.mark.asyncio
    async def test_stop_before_any_record(self, build_worker, fake_subscription, memory_sink):
        worker = build_worker(fake_subscription([]), batch_size=10)

        task = asyncio.create_task(worker.start())
        await asyncio.sleep(0.01)
        await stop_worker(worker, task)

        assert memory_sink.batches == []
        assert worker.lifecycle.state == LifecycleState.STOPPED

    @pytest.mark.asyncio
    async def test_cancellation_leaves_buffer_unacked(
        self, build_worker, fake_subscription, make_records, memory_sink
    ):
        records = make_records(3)
        worker = build_worker(fake_subscription(records), batch_size=10)

        task = asyncio.create_task(worker.start())
        await wait_until(lambda: worker.stats["records_received"] == 3)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert memory_sink.batches == []
        assert all(r.ack.calls == 0 for r in records)
        assert worker.stats["records_abandoned"] == 3
        assert worker.lifecycle.state == LifecycleState.STOPPED

    @pytest.mark.asyncio
    async def test_subscription_failure_stops_worker(self, build_worker, memory_sink):
        class BrokenSubscription:
            stop_calls = 0

            async def run(self, channel):
                raise RuntimeError("fetch loop crashed")

            async def commit_acked(self):
                return {}

            async def stop(self):
                self.stop_calls += 1

        subscription = BrokenSubscription()
        worker = build_worker(subscription, batch_size=10)

        await asyncio.wait_for(worker.start(), timeout=3.0)

        assert worker.lifecycle.reason == "subscription failed"
        assert subscription.stop_calls == 1

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, build_worker, fake_subscription):
        worker = build_worker(fake_subscription([]), batch_size=10)
        task = asyncio.create_task(worker.start())
        await asyncio.sleep(0.01)

        with pytest.raises(RuntimeError, match="only be started once"):
            await worker.start()

        await stop_worker(worker, task)

    @pytest.mark.asyncio
    async def test_max_batches_stops_worker(
        self, build_worker, fake_subscription, make_records, memory_sink
    ):
        worker = build_worker(fake_subscription(make_records(10)), batch_size=2, max_batches=2)

        await asyncio.wait_for(worker.start(), timeout=3.0)

        assert memory_sink.batch_sizes == [2, 2]
        assert worker.lifecycle.state == LifecycleState.STOPPED
        assert "max_batches" in worker.lifecycle.reason

    @pytest.mark.asyncio
    async def test_health_readiness_follows_lifecycle(
        self, build_worker, fake_subscription
    ):
        health = HealthCheckServer(port=None)
        worker = build_worker(fake_subscription([]), batch_size=10, health_server=health)

        task = asyncio.create_task(worker.start())
        await wait_until(lambda: health.is_ready)

        await stop_worker(worker, task)
        assert not health.is_ready


    @pytest.mark.asyncio
    async def test_health_start_failure_still_shuts_down(
        self, build_worker, fake_subscription, memory_sink
    ):
        class BrokenHealthServer(HealthCheckServer):
            async def start(self):
                raise RuntimeError("bind failed")

        subscription = fake_subscription([])
        worker = build_worker(
            subscription, batch_size=10, health_server=BrokenHealthServer(port=None)
        )

        with pytest.raises(RuntimeError, match="bind failed"):
            await asyncio.wait_for(worker.start(), timeout=3.0)

        assert subscription.stop_calls == 1
        assert memory_sink.closed
        assert worker.lifecycle.state == LifecycleState.STOPPED


class TestRedelivery:

    @pytest.mark.asyncio
    async def test_unexpected_write_error_counts_as_failed_batch(
        self, build_worker, fake_subscription, make_records
    ):
        records = make_records(3)
        subscription = fake_subscription(records)
        worker = build_worker(subscription, batch_size=3)

        with patch.object(
            worker.sink_writer, "write", AsyncMock(side_effect=RuntimeError("writer bug"))
        ):
            task = asyncio.create_task(worker.start())
            await wait_until(lambda: worker.stats["batches_failed"] == 1)
            await stop_worker(worker, task)

        assert worker.stats["records_failed"] == 3
        assert worker.stats["records_acked"] == 0
        assert all(r.ack.calls == 0 for r in records)
        assert subscription.redelivered == [(records, False)]

    @pytest.mark.asyncio
    async def test_redelivery_error_does_not_stop_worker(
        self, build_worker, fake_subscription, make_records, memory_sink
    ):
        class FailingRedelivery(fake_subscription):
            def redeliver(self, records, skipped=False):
                raise RuntimeError("consumer closed")

        records = make_records(4)
        memory_sink.fail_next_send(OSError("commit conflict"))
        worker = build_worker(FailingRedelivery(records), batch_size=2)

        task = asyncio.create_task(worker.start())
        await wait_until(lambda: worker.stats["batches_succeeded"] == 1)
        assert worker.lifecycle.is_running
        await stop_worker(worker, task)

        assert [r.ack.calls for r in records] == [0, 0, 1, 1]

    @pytest.mark.asyncio
    async def test_failed_batch_is_written_again_from_the_bus(
        self, build_worker, memory_sink, test_logger
    ):
        tp = TopicPartition("chat.v1.messages.room1", 0)
        consumer = ReplayingConsumer(
            tp,
            [
                ConsumerRecord(
                    topic=tp.topic,
                    partition=tp.partition,
                    offset=offset,
                    timestamp=1767623400000,
                    timestamp_type=0,
                    key=b"user-1",
                    value=b'{"text": "hi"}',
                    checksum=None,
                    serialized_key_size=6,
                    serialized_value_size=14,
                    headers=[],
                )
                for offset in range(4)
            ],
        )
        bus_config = BusConfig(
            bootstrap_servers="localhost:9092",
            topic_pattern=r"^chat\..*",
            group_name="relay-test",
            fetch_timeout_ms=10,
            error_backoff_seconds=0,
        )
        subscription = KafkaSubscription(
            bus_config, logger=test_logger, consumer_factory=MagicMock(return_value=consumer)
        )
        await subscription.subscribe()
        memory_sink.fail_next_send(OSError("commit conflict"))
        worker = build_worker(subscription, batch_size=2)

        task = asyncio.create_task(worker.start())
        await wait_until(lambda: consumer.committed == {tp: 4})
        await stop_worker(worker, task)

        assert consumer.seeks == [0]
        assert worker.stats["batches_failed"] == 1
        assert {row[3] for row in memory_sink.rows} == {0, 1, 2, 3}


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_2500_records_in_batches_of_1000(
        self, build_worker, fake_subscription, make_records, memory_sink
    ):
        records = make_records(2500)
        worker = build_worker(fake_subscription(records), batch_size=1000)

        task = asyncio.create_task(worker.start())
        await wait_until(lambda: worker.stats["records_received"] == 2500, timeout=10.0)
        await stop_worker(worker, task)

        assert memory_sink.batch_sizes == [1000, 1000, 500]
        assert sum(r.ack.calls for r in records) == 2500
        assert all(r.ack.calls == 1 for r in records)
        assert [row[3] for row in memory_sink.rows] == [r.sequence for r in records]
