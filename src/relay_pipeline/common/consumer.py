"""
Kafka subscription feeding the inbound channel.

Kafka commits offsets cumulatively per partition while the pipeline acks
records one at a time. PartitionAckTracker bridges the two: an offset is
only committed once every record before it on the partition was acked.

Kafka has no redelivery timer, so records of a failed batch are fetched
again by seeking the partition back to its lowest un-acked offset
(``redeliver``). Undecodable records are rewound a bounded number of
times and then hold the commit position until a restart or rebalance.
"""

import asyncio
import logging
import ssl
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from aiokafka import AIOKafkaConsumer, ConsumerRebalanceListener
from aiokafka.structs import TopicPartition

from config.config import BusConfig
from core.errors.exceptions import AckError, ChannelClosedError, ConnectError
from core.errors.kafka_classifier import KafkaErrorClassifier
from core.logging.setup import DEFAULT_LOGGER_NAME
from core.logging.utilities import log_exception, log_with_context
from relay_pipeline.common.channel import InboundChannel
from relay_pipeline.common.metrics import (
    record_ack_error,
    record_partition_rewind,
    record_records_consumed,
    update_channel_depth,
    update_connection_status,
)
from relay_pipeline.common.types import InboundRecord, from_consumer_record


class PartitionAckTracker:
    """
    Delivered and acked offsets of one assigned partition.

    Only un-acked offsets are kept, so state is bounded by the records in
    flight. ``committable`` is the lowest un-acked offset, or one past the
    highest delivered offset when everything was acked, which is exactly
    the position Kafka expects in a commit.

    A tracker is ``revoked`` when its partition was taken away in a
    rebalance and ``superseded`` when the partition was rewound for
    redelivery; either way a fresh tracker takes its place.
    """

    def __init__(self, tp: TopicPartition, committed: int | None = None):
        self.tp = tp
        self.revoked = False
        self.superseded = False
        self._unacked: set[int] = set()
        self._next: int | None = None
        self._committed = committed

    @property
    def committable(self) -> int | None:
        if self._unacked:
            return min(self._unacked)
        return self._next

    @property
    def committed(self) -> int | None:
        return self._committed

    @property
    def outstanding(self) -> int:
        return len(self._unacked)

    @property
    def needs_commit(self) -> bool:
        position = self.committable
        return position is not None and position != self._committed

    def track(self, offset: int) -> None:
        self._unacked.add(offset)
        if self._next is None or offset >= self._next:
            self._next = offset + 1

    def ack(self, offset: int) -> bool:
        """Mark offset as acked. Returns False for repeated or unknown offsets."""
        if offset not in self._unacked:
            return False
        self._unacked.discard(offset)
        return True

    def mark_committed(self, offset: int) -> None:
        self._committed = offset


class RecordAck:
    """Ack handle bound to one offset on one partition assignment."""

    __slots__ = ("_tracker", "_offset")

    def __init__(self, tracker: PartitionAckTracker, offset: int):
        self._tracker = tracker
        self._offset = offset

    @property
    def tracker(self) -> PartitionAckTracker:
        return self._tracker

    @property
    def offset(self) -> int:
        return self._offset

    async def __call__(self) -> None:
        if self._tracker.revoked:
            raise AckError(
                f"Partition {self._tracker.tp.topic}[{self._tracker.tp.partition}] "
                f"was revoked before offset {self._offset} was acked",
                context={"partition": self._tracker.tp.partition, "sequence": self._offset},
            )
        # Rewound partition: the record is fetched again and acked through its new handle
        if self._tracker.superseded:
            return
        self._tracker.ack(self._offset)


class _AckTrackingRebalanceListener(ConsumerRebalanceListener):
    def __init__(self, subscription: "KafkaSubscription"):
        self._subscription = subscription

    async def on_partitions_revoked(self, revoked):
        await self._subscription._on_partitions_revoked(revoked)

    async def on_partitions_assigned(self, assigned):
        self._subscription._on_partitions_assigned(assigned)


def build_consumer_config(config: BusConfig) -> dict[str, Any]:
    """aiokafka consumer kwargs for a manually committed group subscription."""
    consumer_config: dict[str, Any] = {
        "bootstrap_servers": config.bootstrap_servers,
        "group_id": config.group_name,
        "client_id": config.client_id,
        "enable_auto_commit": False,
        "auto_offset_reset": config.auto_offset_reset,
        "session_timeout_ms": config.session_timeout_ms,
        "max_poll_interval_ms": config.max_poll_interval_ms,
        "request_timeout_ms": config.request_timeout_ms,
    }

    if config.security_protocol != "PLAINTEXT":
        consumer_config["security_protocol"] = config.security_protocol

    if "SSL" in config.security_protocol:
        consumer_config["ssl_context"] = ssl.create_default_context()

    if config.security_protocol.startswith("SASL"):
        consumer_config["sasl_mechanism"] = config.sasl_mechanism
        consumer_config["sasl_plain_username"] = config.sasl_username
        consumer_config["sasl_plain_password"] = config.sasl_password

    return consumer_config


class KafkaSubscription:
    """
    Consumer-group subscription that turns ConsumerRecords into
    InboundRecords carrying ack handles.

    Lifecycle: ``subscribe()`` -> ``run(channel)`` in its own task ->
    ``stop()``. ``commit_acked()`` is meant to be the Acknowledger's flush
    hook; ``redeliver()`` is called by the worker for records it could not
    write.
    """

    def __init__(
        self,
        config: BusConfig,
        logger: logging.Logger | None = None,
        consumer_factory: Callable[..., Any] = AIOKafkaConsumer,
    ):
        self.config = config
        self._logger = (logger or logging.getLogger(DEFAULT_LOGGER_NAME)).getChild("subscription")
        self._consumer_factory = consumer_factory
        self._consumer: Any = None
        self._trackers: dict[TopicPartition, PartitionAckTracker] = {}
        self._classifier = KafkaErrorClassifier()
        self._running = False
        self._consumer_sequence = 0
        # (partition, offset) -> times an undecodable record was rewound
        self._redeliveries: dict[tuple[TopicPartition, int], int] = {}

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def trackers(self) -> dict[TopicPartition, PartitionAckTracker]:
        return self._trackers

    @property
    def consumer_sequence(self) -> int:
        return self._consumer_sequence

    async def subscribe(self) -> None:
        """
        Start the consumer and join the group.

        Raises:
            ConnectError: the consumer could not be started
        """
        subscription = self.config.topic_pattern or ",".join(self.config.topics)
        log_with_context(
            self._logger,
            logging.INFO,
            "Starting Kafka subscription",
            bootstrap_servers=self.config.bootstrap_servers,
            topic_pattern=subscription,
            consumer_group=self.config.group_name,
        )

        self._consumer = self._consumer_factory(**build_consumer_config(self.config))
        try:
            await self._consumer.start()
            listener = _AckTrackingRebalanceListener(self)
            if self.config.topic_pattern:
                self._consumer.subscribe(pattern=self.config.topic_pattern, listener=listener)
            else:
                self._consumer.subscribe(topics=list(self.config.topics), listener=listener)
        except Exception as e:
            update_connection_status("bus", connected=False)
            try:
                await self._consumer.stop()
            except Exception as stop_error:
                self._logger.debug(f"Error stopping consumer after failed start: {stop_error}")
            self._consumer = None
            raise ConnectError(
                f"Failed to start Kafka consumer for {self.config.bootstrap_servers}",
                cause=e,
                context={"consumer_group": self.config.group_name},
            ) from e

        self._running = True
        update_connection_status("bus", connected=True)
        self._logger.info("Kafka subscription started", extra={"consumer_group": self.config.group_name})

    async def run(self, channel: InboundChannel) -> None:
        """
        Fetch loop: put every record into the channel, in partition order.

        Blocks on a full channel. Fetch errors are logged and retried after
        ``error_backoff_seconds``; the loop only ends on cancellation, on
        ``stop()`` or when the channel is closed.
        """
        if self._consumer is None:
            raise RuntimeError("subscribe() must be called before run()")

        try:
            while self._running:
                try:
                    batches = await self._consumer.getmany(
                        timeout_ms=self.config.fetch_timeout_ms,
                        max_records=self.config.fetch_max_records,
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    error = self._classifier.classify_consumer_error(e)
                    log_exception(
                        self._logger,
                        error,
                        "Error fetching records, retrying",
                        level=logging.WARNING if error.is_retryable else logging.ERROR,
                        include_traceback=not error.is_retryable,
                    )
                    await asyncio.sleep(self.config.error_backoff_seconds)
                    continue

                for tp, records in batches.items():
                    tracker = self._tracker_for(tp)
                    enqueued = 0
                    for consumer_record in records:
                        # Rewound or revoked while this fetch was in hand
                        if self._trackers.get(tp) is not tracker:
                            break
                        await channel.put(self._to_inbound(consumer_record, tracker))
                        enqueued += 1
                    if enqueued:
                        record_records_consumed(tp.topic, enqueued)
                update_channel_depth(channel.qsize())
        except ChannelClosedError:
            self._logger.info("Inbound channel closed, subscription stops enqueuing")

    def _tracker_for(self, tp: TopicPartition) -> PartitionAckTracker:
        tracker = self._trackers.get(tp)
        if tracker is None:
            tracker = PartitionAckTracker(tp)
            self._trackers[tp] = tracker
        return tracker

    def _to_inbound(self, consumer_record, tracker: PartitionAckTracker) -> InboundRecord:
        tracker.track(consumer_record.offset)
        self._consumer_sequence += 1
        return from_consumer_record(
            consumer_record,
            ack=RecordAck(tracker, consumer_record.offset),
            consumer_sequence=self._consumer_sequence,
            received_at=datetime.now(UTC),
        )

    def _on_partitions_assigned(self, assigned) -> None:
        for tp in assigned:
            self._trackers[tp] = PartitionAckTracker(tp)
        self._logger.info(f"Partitions assigned: {len(assigned)}")

    async def _on_partitions_revoked(self, revoked) -> None:
        revoked = set(revoked)
        if not revoked:
            return
        try:
            await self.commit_acked(only=revoked)
        except AckError as e:
            log_exception(
                self._logger,
                e,
                "Failed to commit acked offsets before rebalance",
                level=logging.WARNING,
                include_traceback=False,
            )
        for tp in revoked:
            tracker = self._trackers.pop(tp, None)
            if tracker is not None:
                tracker.revoked = True
        self._logger.info(f"Partitions revoked: {len(revoked)}")

    def redeliver(self, records, skipped: bool = False) -> dict[TopicPartition, int]:
        """
        Rewind partitions so their un-acked records are fetched again.

        Every partition holding one of ``records`` is seeked back to its
        lowest un-acked offset and gets a fresh tracker. Records delivered
        before the rewind are stale from then on: acking them is a no-op
        and they arrive again after the seek.

        Args:
            records: InboundRecords of a failed batch, or skipped records
            skipped: The records could not be decoded. Each such offset is
                rewound at most ``max_redeliveries`` times; after that it
                stays un-acked and holds the partition's commit position
                until a restart or rebalance.

        Returns:
            The offset each partition was rewound to
        """
        if self._consumer is None:
            return {}

        partitions: set[TopicPartition] = set()
        for record in records:
            handle = record.ack
            if not isinstance(handle, RecordAck):
                continue
            tp = handle.tracker.tp
            if self._trackers.get(tp) is not handle.tracker:
                continue
            if skipped:
                key = (tp, handle.offset)
                attempts = self._redeliveries.get(key, 0)
                if attempts >= self.config.max_redeliveries:
                    log_with_context(
                        self._logger,
                        logging.WARNING,
                        "Undecodable record exhausted its redeliveries, leaving it un-acked",
                        subject=record.subject,
                        partition=tp.partition,
                        sequence=handle.offset,
                    )
                    continue
                self._redeliveries[key] = attempts + 1
            partitions.add(tp)

        rewound: dict[TopicPartition, int] = {}
        for tp in partitions:
            tracker = self._trackers[tp]
            offset = tracker.committable
            if offset is None:
                continue
            try:
                self._consumer.seek(tp, offset)
            except Exception as e:
                log_exception(
                    self._logger,
                    e,
                    "Failed to rewind partition, records wait for a restart or rebalance",
                    level=logging.WARNING,
                    include_traceback=False,
                    partition=tp.partition,
                    committed_offset=tracker.committed,
                )
                continue
            tracker.superseded = True
            self._trackers[tp] = PartitionAckTracker(tp, committed=tracker.committed)
            rewound[tp] = offset

        if rewound:
            record_partition_rewind("decode_error" if skipped else "write_failed", len(rewound))
            self._logger.info(
                f"Rewound {len(rewound)} partition(s) for redelivery",
                extra={"reason": "decode_error" if skipped else "write_failed"},
            )
        return rewound

    async def commit_acked(self, only: set[TopicPartition] | None = None) -> dict[TopicPartition, int]:
        """
        Commit the committable position of every partition that advanced.

        Returns:
            The offsets that were committed

        Raises:
            AckError: the commit request failed
        """
        if self._consumer is None:
            return {}

        offsets = {
            tp: tracker.committable
            for tp, tracker in self._trackers.items()
            if tracker.needs_commit and (only is None or tp in only)
        }
        if not offsets:
            return {}

        try:
            await self._consumer.commit(offsets)
        except Exception as e:
            record_ack_error("commit")
            raise AckError(
                "Failed to commit acknowledged offsets",
                cause=e,
                context={"partitions": len(offsets)},
            ) from e

        for tp, offset in offsets.items():
            tracker = self._trackers.get(tp)
            if tracker is not None:
                tracker.mark_committed(offset)
        self._redeliveries = {
            key: attempts
            for key, attempts in self._redeliveries.items()
            if key[0] not in offsets or key[1] >= offsets[key[0]]
        }

        self._logger.debug(f"Committed acknowledged offsets for {len(offsets)} partition(s)")
        return offsets

    async def stop(self) -> None:
        """Commit what was acked, then leave the group. Safe to call twice."""
        self._running = False
        if self._consumer is None:
            return

        self._logger.info("Stopping Kafka subscription")
        try:
            await self.commit_acked()
        except AckError as e:
            log_exception(self._logger, e, "Final offset commit failed", level=logging.WARNING)

        try:
            await self._consumer.stop()
            self._logger.info("Kafka subscription stopped")
        finally:
            update_connection_status("bus", connected=False)
            self._consumer = None
