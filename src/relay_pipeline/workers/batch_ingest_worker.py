"""
Batch Ingest Worker - relays bus records into the analytical store.

Wires the inbound channel, batch accumulator, sink writer and
acknowledger, and owns the two long-running tasks:

- subscription task: bus -> inbound channel (blocks when the channel is full)
- accumulator loop (the task calling start()): channel -> accumulator ->
  sink writer -> acknowledger

Records are acknowledged only after the batch that contains them was
committed. A failed batch is dropped without acks and its partitions are
rewound so the records are fetched again; the loop keeps running.

Shutdown order:
    DRAINING -> stop the subscription task -> flush + ack the buffer ->
    stop the subscription (final commit, leave group) -> close the sink ->
    STOPPED
"""

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from core.logging.context import set_log_context
from core.logging.setup import DEFAULT_LOGGER_NAME
from core.logging.utilities import format_cycle_output, log_exception, log_with_context
from relay_pipeline.common.accumulator import BatchAccumulator
from relay_pipeline.common.acknowledger import Acknowledger
from relay_pipeline.common.channel import InboundChannel
from relay_pipeline.common.health import HealthCheckServer
from relay_pipeline.common.lifecycle import LifecycleController
from relay_pipeline.common.metrics import (
    record_batch_flush,
    update_channel_depth,
    update_pending_records,
)
from relay_pipeline.common.types import Batch, InboundRecord
from relay_pipeline.writers.sink_writer import SinkWriter


class BatchIngestWorker:
    """
    Worker that batches bus records into single-commit writes.

    A batch is flushed when it reaches ``batch_size`` records or when the
    flush timer ticks with a non-empty buffer. The timer is a fixed grid of
    ``batch_timeout_seconds`` anchored at loop start: size flushes do not
    reset it and missed ticks are skipped, not queued.

    Usage:
        >>> worker = BatchIngestWorker(subscription, sink_writer, batch_size=1000)
        >>> worker.lifecycle.install_signal_handlers()
        >>> await worker.start()   # returns after a drained shutdown
    """

    WORKER_NAME = "relay_ingest"
    CYCLE_LOG_INTERVAL_SECONDS = 30

    def __init__(
        self,
        subscription: Any,
        sink_writer: SinkWriter,
        batch_size: int = 1000,
        batch_timeout_seconds: float = 5.0,
        channel_capacity: int | None = None,
        lifecycle: LifecycleController | None = None,
        acknowledger: Acknowledger | None = None,
        health_server: HealthCheckServer | None = None,
        logger: logging.Logger | None = None,
        max_batches: int | None = None,
        worker_id: str | None = None,
        cycle_log_interval_seconds: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            subscription: Bus subscription with ``run(channel)``, ``stop()``
                and ``commit_acked()`` (already subscribed)
            sink_writer: Writer for the destination table
            batch_size: Size trigger (records per batch)
            batch_timeout_seconds: Timer period
            channel_capacity: Inbound channel bound (default: batch_size)
            lifecycle: Shared lifecycle controller (created if omitted)
            acknowledger: Defaults to one flushing through subscription.commit_acked
            health_server: Optional readiness/liveness server
            logger: Service logger; components log through children of it
            max_batches: Stop after this many successful batches (testing aid)
            worker_id: Identifier for log context
            cycle_log_interval_seconds: Period of the statistics log line
            clock: Monotonic clock, injectable for tests
        """
        if batch_timeout_seconds <= 0:
            raise ValueError(f"batch_timeout_seconds must be > 0, got {batch_timeout_seconds}")

        self._logger = logger or logging.getLogger(DEFAULT_LOGGER_NAME)
        self.subscription = subscription
        self.sink_writer = sink_writer
        self.batch_size = batch_size
        self.batch_timeout_seconds = batch_timeout_seconds
        self.max_batches = max_batches
        self.worker_id = worker_id or self.WORKER_NAME
        self.health_server = health_server
        self.cycle_log_interval_seconds = cycle_log_interval_seconds or self.CYCLE_LOG_INTERVAL_SECONDS
        self._clock = clock

        self.lifecycle = lifecycle or LifecycleController(logger=self._logger)
        self.channel = InboundChannel(channel_capacity or batch_size)
        self.acknowledger = acknowledger or Acknowledger(
            logger=self._logger,
            flush=getattr(subscription, "commit_acked", None),
        )
        self.accumulator = BatchAccumulator(
            batch_size=batch_size,
            flush_callback=self._flush_batch,
            logger=self._logger,
            clock=clock,
        )

        self._started = False
        self._subscription_task: asyncio.Task | None = None
        self._cycle_task: asyncio.Task | None = None

        # Statistics
        self._records_received = 0
        self._records_written = 0
        self._records_acked = 0
        self._records_skipped = 0
        self._records_failed = 0
        self._records_abandoned = 0
        self._batches_succeeded = 0
        self._batches_failed = 0
        self._cycle_count = 0
        self._last_cycle_succeeded = 0
        self._last_cycle_failed = 0

    @property
    def stats(self) -> dict[str, int]:
        return {
            "records_received": self._records_received,
            "records_written": self._records_written,
            "records_acked": self._records_acked,
            "records_skipped": self._records_skipped,
            "records_failed": self._records_failed,
            "records_abandoned": self._records_abandoned,
            "batches_succeeded": self._batches_succeeded,
            "batches_failed": self._batches_failed,
        }

    def request_stop(self, reason: str = "stop requested") -> bool:
        return self.lifecycle.request_shutdown(reason)

    async def start(self) -> None:
        """Run until shutdown is requested, then drain. Can only run once."""
        if self._started:
            raise RuntimeError("BatchIngestWorker can only be started once")
        self._started = True

        set_log_context(stage=self.WORKER_NAME, worker_id=self.worker_id)
        log_with_context(
            self._logger,
            logging.INFO,
            "Starting batch ingest worker",
            batch_size=self.batch_size,
            table=self.sink_writer.table.name,
        )

        try:
            if self.health_server is not None:
                await self.health_server.start()
                self.health_server.set_ready(transport_connected=True)

            self._subscription_task = asyncio.create_task(
                self._run_subscription(), name="relay-subscription"
            )
            self._cycle_task = asyncio.create_task(
                self._periodic_cycle_output(), name="relay-cycle-output"
            )
            await self._accumulate_loop()
        except asyncio.CancelledError:
            self._logger.warning("Worker cancelled, buffered records left for redelivery")
            await self._shutdown(flush=False)
            raise
        except Exception as e:
            log_exception(self._logger, e, "Batch ingest worker failed, shutting down")
            await self._shutdown(flush=False)
            raise
        await self._shutdown(flush=True)

    async def _run_subscription(self) -> None:
        try:
            await self.subscription.run(self.channel)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_exception(self._logger, e, "Subscription task failed")
            self.lifecycle.request_shutdown("subscription failed")

    async def _accumulate_loop(self) -> None:
        """
        Three-way wait on the next record, the next timer tick and the
        shutdown event. Shutdown always wins.
        """
        period = self.batch_timeout_seconds
        next_tick = self._clock() + period
        shutdown_task = asyncio.create_task(self.lifecycle.wait_for_shutdown())
        get_task: asyncio.Task | None = None

        try:
            while not self.lifecycle.shutdown_requested:
                if get_task is None:
                    get_task = asyncio.create_task(self.channel.get())

                timeout = max(0.0, next_tick - self._clock())
                done, _ = await asyncio.wait(
                    {get_task, shutdown_task},
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if shutdown_task in done or self.lifecycle.shutdown_requested:
                    break

                if get_task in done:
                    record = get_task.result()
                    get_task = None
                    self._records_received += 1
                    await self.accumulator.accept(record)

                now = self._clock()
                if now >= next_tick:
                    await self.accumulator.on_timer()
                    while next_tick <= now:
                        next_tick += period

                update_pending_records(self.accumulator.pending)
                if self.health_server is not None:
                    self.health_server.record_heartbeat()
        finally:
            shutdown_task.cancel()
            if get_task is not None:
                if not get_task.done():
                    get_task.cancel()
                elif not get_task.cancelled() and get_task.exception() is None:
                    # Dequeued after shutdown won the race; left for redelivery
                    self._records_abandoned += 1

    async def _flush_batch(self, batch: Batch) -> None:
        """Write, then ack on success. Never raises: a failed batch is redelivered."""
        try:
            result = await self.sink_writer.write(batch)
        except Exception as e:
            self._record_failed_batch(batch)
            log_exception(
                self._logger,
                e,
                "Unexpected error flushing batch, records left for redelivery",
                batch_id=batch.batch_id,
                batch_size=len(batch),
                trigger=batch.trigger.value,
            )
            self._request_redelivery(batch.records)
            return

        self._records_skipped += len(result.skipped)

        if not result.success:
            self._record_failed_batch(batch)
            log_exception(
                self._logger,
                result.error,
                "Batch write failed, records left for redelivery",
                include_traceback=False,
                batch_id=batch.batch_id,
                batch_size=len(batch),
                trigger=batch.trigger.value,
                batches_failed=self._batches_failed,
            )
            self._request_redelivery(batch.records)
            return

        acked = await self.acknowledger.ack_all(result.written, batch_id=batch.batch_id)
        self._batches_succeeded += 1
        self._records_written += len(result.written)
        self._records_acked += acked
        record_batch_flush(
            batch.trigger.value,
            True,
            len(batch),
            table=self.sink_writer.table.name,
            duration_seconds=result.duration_ms / 1000,
        )
        log_with_context(
            self._logger,
            logging.INFO,
            "Batch committed",
            batch_id=batch.batch_id,
            trigger=batch.trigger.value,
            batch_size=len(batch),
            records_written=len(result.written),
            records_acked=acked,
            records_skipped=len(result.skipped),
            duration_ms=result.duration_ms,
        )
        if result.skipped:
            self._request_redelivery([record for record, _ in result.skipped], skipped=True)

        if self.max_batches and self._batches_succeeded >= self.max_batches:
            self.lifecycle.request_shutdown(f"max_batches={self.max_batches} reached")

    def _record_failed_batch(self, batch: Batch) -> None:
        self._batches_failed += 1
        self._records_failed += len(batch)
        record_batch_flush(batch.trigger.value, False, len(batch))

    def _request_redelivery(self, records: list[InboundRecord], skipped: bool = False) -> None:
        """Ask the subscription to fetch un-acked records again, if it can."""
        redeliver = getattr(self.subscription, "redeliver", None)
        if redeliver is None or not records:
            return
        try:
            redeliver(records, skipped=skipped)
        except Exception as e:
            log_exception(
                self._logger,
                e,
                "Failed to request redelivery",
                level=logging.WARNING,
                records_pending=len(records),
            )

    async def _shutdown(self, flush: bool) -> None:
        self.lifecycle.request_shutdown("worker stopping")
        if self.health_server is not None:
            self.health_server.set_draining()

        self.channel.close()
        await self._cancel_task(self._subscription_task)

        left_in_channel = self.channel.discard_pending()
        self._records_abandoned += left_in_channel
        update_channel_depth(0)

        if flush:
            try:
                await self.accumulator.on_shutdown()
            except Exception as e:
                log_exception(self._logger, e, "Error flushing buffer during shutdown")
        else:
            self._records_abandoned += self.accumulator.pending

        try:
            await self.subscription.stop()
        except Exception as e:
            log_exception(self._logger, e, "Error stopping subscription")

        try:
            await self.sink_writer.connection.close()
        except Exception as e:
            log_exception(self._logger, e, "Error closing sink")

        await self._cancel_task(self._cycle_task)
        if self.health_server is not None:
            await self.health_server.stop()

        self.lifecycle.mark_stopped()
        update_pending_records(0)
        log_with_context(
            self._logger,
            logging.INFO,
            "Batch ingest worker stopped",
            reason=self.lifecycle.reason,
            batches_flushed=self._batches_succeeded,
            batches_failed=self._batches_failed,
            records_acked=self._records_acked,
            records_pending=self._records_abandoned,
        )

    @staticmethod
    async def _cancel_task(task: asyncio.Task | None) -> None:
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _periodic_cycle_output(self) -> None:
        self._logger.info(
            f"{format_cycle_output(0, 0, 0)} [cycle output every {self.cycle_log_interval_seconds}s]"
        )
        while True:
            await asyncio.sleep(self.cycle_log_interval_seconds)
            self._cycle_count += 1
            since_last = {
                "succeeded": self._records_acked - self._last_cycle_succeeded,
                "failed": self._records_failed - self._last_cycle_failed,
            }
            self._last_cycle_succeeded = self._records_acked
            self._last_cycle_failed = self._records_failed
            self._logger.info(
                format_cycle_output(
                    cycle_count=self._cycle_count,
                    succeeded=self._records_acked,
                    failed=self._records_failed,
                    skipped=self._records_skipped,
                    since_last=since_last,
                    interval_seconds=self.cycle_log_interval_seconds,
                    pending=self.accumulator.pending,
                ),
                extra={
                    "records_pending": self.accumulator.pending,
                    "channel_depth": self.channel.qsize(),
                },
            )
