"""
Maps batches of inbound records to sink rows and commits each batch in
one write.

Row layout:
    event_time     - when the record was consumed (UTC)
    subject        - topic the record arrived on
    partition_key  - one positional segment of the subject
    sequence       - bus offset of the record
    metadata       - delivery metadata as JSON
    payload        - record body, verbatim
"""

import json
import logging
import time

from core.errors.exceptions import RecordDecodeError, SinkWriteError, wrap_exception
from core.logging.setup import DEFAULT_LOGGER_NAME
from core.logging.utilities import log_exception, log_with_context
from relay_pipeline.common.metrics import record_decode_error, record_records_written
from relay_pipeline.common.types import Batch, InboundRecord, SinkRow, WriteResult
from relay_pipeline.storage.base import SinkConnection, TableDescriptor


def extract_partition_key(subject: str, segment: int = 3, delimiter: str = ".") -> str:
    """
    Positional segment of a hierarchical subject.

    >>> extract_partition_key("chat.v1.messages.room42")
    'room42'
    >>> extract_partition_key("chat.v1")
    ''
    """
    parts = subject.split(delimiter)
    if segment < len(parts):
        return parts[segment]
    return ""


class SinkWriter:
    """
    Writes one batch per call, with no internal retry.

    Records that cannot be decoded are skipped (and never acked) while the
    rest of the batch is written. Any prepare, append or send failure fails
    the whole batch; the bus redelivers it.
    """

    def __init__(
        self,
        connection: SinkConnection,
        table: TableDescriptor,
        consumer_group: str = "",
        partition_key_segment: int = 3,
        subject_delimiter: str = ".",
        logger: logging.Logger | None = None,
    ):
        self.connection = connection
        self.table = table
        self.consumer_group = consumer_group
        self.partition_key_segment = partition_key_segment
        self.subject_delimiter = subject_delimiter
        self._logger = (logger or logging.getLogger(DEFAULT_LOGGER_NAME)).getChild("sink_writer")

    def build_metadata(self, record: InboundRecord) -> str:
        """Delivery metadata JSON. Raises RecordDecodeError if not encodable."""
        try:
            metadata = {
                "stream": record.subject,
                "partition": record.partition,
                "sequence": {
                    "stream": record.sequence,
                    "consumer": record.consumer_sequence,
                },
                "timestamp": record.published_at.isoformat() if record.published_at else None,
                "consumer_group": self.consumer_group,
            }
            if record.key is not None:
                metadata["key"] = record.key.decode("utf-8")
            if record.headers:
                metadata["headers"] = {name: value.decode("utf-8") for name, value in record.headers}
            return json.dumps(metadata, ensure_ascii=False)
        except (TypeError, ValueError, AttributeError) as e:
            # UnicodeDecodeError is a ValueError
            raise RecordDecodeError(
                f"Cannot encode delivery metadata: {e}",
                subject=record.subject,
                sequence=record.sequence,
                cause=e,
            ) from e

    def build_row(self, record: InboundRecord) -> SinkRow:
        if record.payload is None:
            raise RecordDecodeError(
                "Record has no payload",
                subject=record.subject,
                sequence=record.sequence,
            )

        return SinkRow(
            event_time=record.received_at,
            subject=record.subject,
            partition_key=extract_partition_key(
                record.subject, self.partition_key_segment, self.subject_delimiter
            ),
            sequence=record.sequence,
            metadata=self.build_metadata(record),
            payload=bytes(record.payload),
        )

    async def write(self, batch: Batch) -> WriteResult:
        start = time.perf_counter()
        written: list[InboundRecord] = []
        skipped: list[tuple[InboundRecord, Exception]] = []

        try:
            handle = await self.connection.prepare_batch(self.table)

            for record in batch:
                try:
                    row = self.build_row(record)
                except RecordDecodeError as e:
                    skipped.append((record, e))
                    log_exception(
                        self._logger,
                        e,
                        "Skipping undecodable record",
                        level=logging.WARNING,
                        include_traceback=False,
                        batch_id=batch.batch_id,
                        subject=record.subject,
                        partition=record.partition,
                        sequence=record.sequence,
                    )
                    continue
                handle.append(*row.as_tuple())
                written.append(record)

            if written:
                await handle.send()
        except Exception as e:
            error = wrap_exception(e, SinkWriteError, context={"batch_id": batch.batch_id})
            return WriteResult(
                success=False,
                skipped=skipped,
                error=error,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
        finally:
            if skipped:
                record_decode_error(self.table.name, len(skipped))

        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        record_records_written(self.table.name, len(written))
        log_with_context(
            self._logger,
            logging.DEBUG,
            "Batch written",
            batch_id=batch.batch_id,
            table=self.table.name,
            records_written=len(written),
            records_skipped=len(skipped),
            duration_ms=duration_ms,
        )
        return WriteResult(
            success=True,
            written=written,
            skipped=skipped,
            duration_ms=duration_ms,
        )
