"""
Prometheus metrics for the relay pipeline.

- Record flow: consumed, written, acked, decode errors, ack errors
- Batch flushes by trigger and outcome, write duration
- Buffer and channel depth
- Connection status of the bus and the sink
"""

from prometheus_client import Counter, Gauge, Histogram

records_consumed_counter = Counter(
    "relay_records_consumed_total",
    "Records received from the bus",
    ["topic"],
)

records_written_counter = Counter(
    "relay_records_written_total",
    "Records committed to the sink",
    ["table"],
)

records_acked_counter = Counter(
    "relay_records_acked_total",
    "Records acknowledged to the bus",
)

ack_errors_counter = Counter(
    "relay_ack_errors_total",
    "Failed record acknowledgements and offset commits",
    ["operation"],
)

decode_errors_counter = Counter(
    "relay_decode_errors_total",
    "Records skipped because they could not be mapped to a row",
    ["table"],
)

batch_flushes_counter = Counter(
    "relay_batch_flushes_total",
    "Batch flushes by trigger and outcome",
    ["trigger", "outcome"],
)

batch_write_duration_histogram = Histogram(
    "relay_batch_write_duration_seconds",
    "Time spent committing one batch to the sink",
    ["table"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

batch_size_histogram = Histogram(
    "relay_batch_size_records",
    "Records per flushed batch",
    buckets=(1, 10, 50, 100, 250, 500, 1000, 2500, 5000),
)

partition_rewinds_counter = Counter(
    "relay_partition_rewinds_total",
    "Partitions seeked back so un-acked records are fetched again",
    ["reason"],
)

pending_records_gauge = Gauge(
    "relay_pending_records",
    "Records buffered in the accumulator awaiting flush",
)

channel_depth_gauge = Gauge(
    "relay_channel_depth",
    "Records waiting in the inbound channel",
)

connection_status_gauge = Gauge(
    "relay_connection_status",
    "Connection status (1=connected, 0=disconnected)",
    ["component"],
)


def record_records_consumed(topic: str, count: int = 1) -> None:
    records_consumed_counter.labels(topic=topic).inc(count)


def record_records_written(table: str, count: int) -> None:
    if count:
        records_written_counter.labels(table=table).inc(count)


def record_records_acked(count: int) -> None:
    if count:
        records_acked_counter.inc(count)


def record_ack_error(operation: str = "ack") -> None:
    ack_errors_counter.labels(operation=operation).inc()


def record_decode_error(table: str, count: int = 1) -> None:
    decode_errors_counter.labels(table=table).inc(count)


def record_batch_flush(
    trigger: str,
    success: bool,
    size: int,
    table: str | None = None,
    duration_seconds: float | None = None,
) -> None:
    """Record one flush with its outcome, size and (optionally) write time."""
    outcome = "success" if success else "failure"
    batch_flushes_counter.labels(trigger=trigger, outcome=outcome).inc()
    batch_size_histogram.observe(size)
    if table is not None and duration_seconds is not None:
        batch_write_duration_histogram.labels(table=table).observe(duration_seconds)


def record_partition_rewind(reason: str, count: int = 1) -> None:
    if count:
        partition_rewinds_counter.labels(reason=reason).inc(count)


def update_pending_records(count: int) -> None:
    pending_records_gauge.set(count)


def update_channel_depth(count: int) -> None:
    channel_depth_gauge.set(count)


def update_connection_status(component: str, connected: bool) -> None:
    connection_status_gauge.labels(component=component).set(1 if connected else 0)


__all__ = [
    "record_records_consumed",
    "record_records_written",
    "record_records_acked",
    "record_ack_error",
    "record_decode_error",
    "record_batch_flush",
    "record_partition_rewind",
    "update_pending_records",
    "update_channel_depth",
    "update_connection_status",
]
