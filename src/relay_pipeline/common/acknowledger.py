"""Confirms successfully written records to the bus."""

import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from core.errors.exceptions import AckError
from core.logging.setup import DEFAULT_LOGGER_NAME
from core.logging.utilities import log_exception
from relay_pipeline.common.metrics import record_ack_error, record_records_acked
from relay_pipeline.common.types import InboundRecord


class Acknowledger:
    """
    Acknowledges records one by one, then flushes once.

    Ack failures are logged and counted but never raised, and one failure
    does not stop the rest of the batch. ``flush`` is the optional
    per-batch hook (the subscription's offset commit) awaited after the
    individual acks.
    """

    def __init__(
        self,
        logger: logging.Logger | None = None,
        flush: Callable[[], Awaitable[Any]] | None = None,
    ):
        self._logger = (logger or logging.getLogger(DEFAULT_LOGGER_NAME)).getChild("acknowledger")
        self._flush = flush
        self.records_acked = 0
        self.ack_failures = 0
        self.flush_failures = 0

    async def ack_all(self, records: Iterable[InboundRecord], batch_id: str | None = None) -> int:
        """Ack every record in order. Returns the number of successful acks."""
        acked = 0
        for record in records:
            try:
                await record.ack()
            except Exception as e:
                self.ack_failures += 1
                record_ack_error("ack")
                error = e if isinstance(e, AckError) else AckError(
                    "Failed to acknowledge record", cause=e
                )
                log_exception(
                    self._logger,
                    error,
                    "Failed to acknowledge record",
                    level=logging.WARNING,
                    include_traceback=False,
                    batch_id=batch_id,
                    subject=record.subject,
                    partition=record.partition,
                    sequence=record.sequence,
                )
                continue
            acked += 1

        if acked and self._flush is not None:
            try:
                await self._flush()
            except Exception as e:
                self.flush_failures += 1
                record_ack_error("commit")
                log_exception(
                    self._logger,
                    e,
                    "Failed to commit acknowledged offsets",
                    level=logging.WARNING,
                    batch_id=batch_id,
                )

        self.records_acked += acked
        record_records_acked(acked)
        return acked
