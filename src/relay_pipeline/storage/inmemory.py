"""
In-memory sink for local runs and tests.

Keeps every committed batch so tests can assert on exact write boundaries,
and supports injected failures on connect, prepare and send.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import polars as pl

from core.errors.exceptions import ConnectError, SinkWriteError
from core.logging.setup import DEFAULT_LOGGER_NAME
from relay_pipeline.storage.base import BatchHandle, SinkConnection, TableDescriptor


@dataclass
class CommittedBatch:
    """One successful send, in commit order."""

    table: str
    rows: list[tuple[Any, ...]]
    committed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __len__(self) -> int:
        return len(self.rows)


class InMemoryBatchHandle(BatchHandle):
    def __init__(self, connection: "InMemorySinkConnection", table: TableDescriptor):
        super().__init__(table)
        self._connection = connection

    async def _commit(self, rows: list[tuple[Any, ...]]) -> int:
        return await self._connection._commit(self.table, rows)


class InMemorySinkConnection(SinkConnection):
    """
    Sink that appends batches to a list.

    Failure injection:
        fail_connect(exc)            - connect() raises ConnectError(cause=exc)
        fail_next_prepare(exc, n)    - the next n prepare_batch() calls raise exc
        fail_next_send(exc, n)       - the next n send() calls raise exc
    """

    def __init__(self, send_delay_seconds: float = 0.0, logger: logging.Logger | None = None):
        self.batches: list[CommittedBatch] = []
        self.prepare_calls = 0
        self.send_calls = 0
        self.send_delay_seconds = send_delay_seconds
        self._logger = (logger or logging.getLogger(DEFAULT_LOGGER_NAME)).getChild("inmemory")
        self._connected = False
        self._closed = False
        self._connect_error: Exception | None = None
        self._prepare_failures: list[Exception] = []
        self._send_failures: list[Exception] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def rows(self) -> list[tuple[Any, ...]]:
        return [row for batch in self.batches for row in batch.rows]

    @property
    def batch_sizes(self) -> list[int]:
        return [len(batch) for batch in self.batches]

    def fail_connect(self, exc: Exception) -> None:
        self._connect_error = exc

    def fail_next_prepare(self, exc: Exception, times: int = 1) -> None:
        self._prepare_failures.extend([exc] * times)

    def fail_next_send(self, exc: Exception, times: int = 1) -> None:
        self._send_failures.extend([exc] * times)

    def table_descriptor(self, name: str = "messages") -> TableDescriptor:
        return TableDescriptor(name=name, uri=f"memory://{name}")

    def to_polars(self, columns: tuple[str, ...] | None = None) -> pl.DataFrame:
        """Committed rows as a DataFrame, for read-back assertions."""
        if columns is None:
            columns = TableDescriptor(name="messages").columns
        return pl.DataFrame(self.rows, schema=list(columns), orient="row")

    async def connect(self) -> None:
        if self._connect_error is not None:
            raise ConnectError("In-memory sink refused connection", cause=self._connect_error)
        self._connected = True
        self._closed = False

    async def prepare_batch(self, table: TableDescriptor) -> BatchHandle:
        self.prepare_calls += 1
        if self._prepare_failures:
            raise self._prepare_failures.pop(0)
        if not self._connected:
            raise SinkWriteError("In-memory sink is not connected")
        return InMemoryBatchHandle(self, table)

    async def _commit(self, table: TableDescriptor, rows: list[tuple[Any, ...]]) -> int:
        self.send_calls += 1
        if self.send_delay_seconds:
            await asyncio.sleep(self.send_delay_seconds)
        if self._send_failures:
            raise self._send_failures.pop(0)

        self.batches.append(CommittedBatch(table=table.name, rows=list(rows)))
        self._logger.debug(f"Committed {len(rows)} rows to {table.name}")
        return len(rows)

    async def close(self) -> None:
        self._connected = False
        self._closed = True
