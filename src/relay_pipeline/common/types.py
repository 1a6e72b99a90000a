"""Record, batch and write-result types shared by the pipeline components."""

import json
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

__all__ = [
    "AckHandle",
    "InboundRecord",
    "FlushTrigger",
    "Batch",
    "SinkRow",
    "WriteResult",
    "from_consumer_record",
]

AckHandle = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class InboundRecord:
    """A bus record waiting to be persisted.

    ``ack`` tells the bus the record was durably processed. Awaiting it more
    than once is a no-op; never awaiting it leaves the record for redelivery.
    """

    subject: str
    payload: bytes | None
    sequence: int
    received_at: datetime
    ack: AckHandle = field(repr=False, compare=False)
    partition: int = 0
    published_at: datetime | None = None
    consumer_sequence: int = 0
    key: bytes | None = None
    headers: list[tuple[str, bytes]] | None = None


class FlushTrigger(StrEnum):
    SIZE = "size"
    TIMER = "timer"
    SHUTDOWN = "shutdown"


@dataclass
class Batch:
    """Ordered records flushed together in a single write."""

    records: list[InboundRecord]
    batch_id: str
    trigger: FlushTrigger

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[InboundRecord]:
        return iter(self.records)


@dataclass(frozen=True)
class SinkRow:
    """One destination row, in column order."""

    event_time: datetime
    subject: str
    partition_key: str
    sequence: int
    metadata: str
    payload: bytes

    COLUMNS = ("event_time", "subject", "partition_key", "sequence", "metadata", "payload")

    def as_tuple(self) -> tuple:
        return (
            self.event_time,
            self.subject,
            self.partition_key,
            self.sequence,
            self.metadata,
            self.payload,
        )

    @property
    def metadata_dict(self) -> dict:
        return json.loads(self.metadata)


@dataclass
class WriteResult:
    """Outcome of writing one batch.

    Only ``written`` records may be acknowledged. ``skipped`` holds records
    that could not be decoded, paired with the error.
    """

    success: bool
    written: list[InboundRecord] = field(default_factory=list)
    skipped: list[tuple[InboundRecord, Exception]] = field(default_factory=list)
    error: Exception | None = None
    duration_ms: float = 0.0


def from_consumer_record(
    record,
    ack: AckHandle,
    consumer_sequence: int = 0,
    received_at: datetime | None = None,
) -> InboundRecord:
    """Convert aiokafka ConsumerRecord to InboundRecord."""
    headers = None
    if getattr(record, "headers", None):
        headers = [(k, v) for k, v in record.headers]

    published_at = None
    if record.timestamp is not None and record.timestamp >= 0:
        published_at = datetime.fromtimestamp(record.timestamp / 1000, tz=UTC)

    return InboundRecord(
        subject=record.topic,
        payload=record.value,
        sequence=record.offset,
        received_at=received_at or datetime.now(UTC),
        ack=ack,
        partition=record.partition,
        published_at=published_at,
        consumer_sequence=consumer_sequence,
        key=record.key,
        headers=headers,
    )
