"""
Delta Lake sink: one append commit per batch.

Rows are collected into a polars DataFrame with a fixed schema and written
with a single ``write_deltalake(mode="append")``, so a batch is either fully
visible in the table or not at all.
"""

import asyncio
import logging
import time
from typing import Any

import polars as pl
from deltalake import DeltaTable, WriterProperties, write_deltalake

from config.config import SinkConfig
from core.errors.exceptions import (
    ConfigurationError,
    ConnectError,
    SinkWriteError,
    wrap_exception,
)
from core.logging.setup import DEFAULT_LOGGER_NAME
from relay_pipeline.common.metrics import update_connection_status
from relay_pipeline.storage.base import BatchHandle, SinkConnection, TableDescriptor

SINK_SCHEMA: dict[str, pl.DataType] = {
    "event_time": pl.Datetime("us", "UTC"),
    "subject": pl.Utf8,
    "partition_key": pl.Utf8,
    "sequence": pl.Int64,
    "metadata": pl.Utf8,
    "payload": pl.Binary,
}

# storage_options keys grouped by credential mechanism (object_store names)
CREDENTIAL_MECHANISMS: dict[str, tuple[str, ...]] = {
    "azure_account_key": ("account_key", "azure_storage_account_key"),
    "azure_sas": ("sas_token", "azure_storage_sas_token"),
    "azure_client_secret": ("client_secret", "azure_client_secret"),
    "azure_cli": ("use_azure_cli", "azure_use_azure_cli"),
    "aws_access_key": ("aws_access_key_id", "access_key_id"),
    "bearer_token": ("bearer_token", "token"),
}


def is_local_uri(uri: str) -> bool:
    return "://" not in uri or uri.startswith("file://")


def credential_mechanisms(storage_options: dict[str, str]) -> list[str]:
    """Names of the credential mechanisms present in storage_options."""
    keys = {key.lower() for key, value in storage_options.items() if value not in (None, "")}
    return [
        mechanism
        for mechanism, option_keys in CREDENTIAL_MECHANISMS.items()
        if keys.intersection(option_keys)
    ]


def validate_sink_settings(config: SinkConfig) -> None:
    """
    Reject configuration that would make the target ambiguous.

    Raises:
        ConfigurationError: missing URI, credentials for a local table, or
            more than one credential mechanism
    """
    if not config.table_uri:
        raise ConfigurationError("sink.table_uri is required for the Delta sink")

    mechanisms = credential_mechanisms(config.storage_options)
    if mechanisms and is_local_uri(config.table_uri):
        raise ConfigurationError(
            f"Credentials {mechanisms} were given for local table {config.table_uri}"
        )
    if len(mechanisms) > 1:
        raise ConfigurationError(
            f"Only one credential mechanism may be configured, got {mechanisms}"
        )


class DeltaBatchHandle(BatchHandle):
    def __init__(self, connection: "DeltaSinkConnection", table: TableDescriptor):
        super().__init__(table)
        self._connection = connection

    async def _commit(self, rows: list[tuple[Any, ...]]) -> int:
        return await self._connection.append_rows(self.table, rows)


class DeltaSinkConnection(SinkConnection):
    """
    Delta Lake table reached through deltalake's object_store backends.

    Blocking deltalake calls run in a worker thread; each commit is bounded
    by ``max_execution_seconds``. A commit that times out is reported as a
    failed write and its records are redelivered.

    A thread cannot be cancelled, so a timed-out commit keeps running. At
    most one commit is in flight: the next batch waits for it up to the
    same limit and fails without writing if it is still running. Remote
    tables also pass the limit to object_store as its request timeout.
    """

    def __init__(self, config: SinkConfig, logger: logging.Logger | None = None):
        self.config = config
        self._logger = (logger or logging.getLogger(DEFAULT_LOGGER_NAME)).getChild("delta")
        self._writer_properties = WriterProperties(compression=config.compression)
        self._connected = False
        self.table_version: int | None = None
        self._inflight: asyncio.Future | None = None

    @property
    def storage_options(self) -> dict[str, str] | None:
        options = dict(self.config.storage_options)
        if not is_local_uri(self.config.table_uri):
            options.setdefault("timeout", f"{max(1, int(self.config.max_execution_seconds))}s")
        return options or None

    @property
    def commit_in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @property
    def is_connected(self) -> bool:
        return self._connected

    def table_descriptor(self) -> TableDescriptor:
        return TableDescriptor(name=self.config.table_name, uri=self.config.table_uri)

    async def connect(self) -> None:
        validate_sink_settings(self.config)

        uri = self.config.table_uri
        try:
            exists = await asyncio.to_thread(
                DeltaTable.is_deltatable, uri, self.storage_options
            )
            if exists:
                table = await asyncio.to_thread(
                    DeltaTable, uri, storage_options=self.storage_options
                )
                self.table_version = table.version()
        except Exception as e:
            update_connection_status("sink", connected=False)
            raise ConnectError(
                f"Failed to open Delta table {uri}",
                cause=e,
                context={"table_uri": uri},
            ) from e

        self._connected = True
        update_connection_status("sink", connected=True)
        self._logger.info(
            "Delta sink connected",
            extra={
                "table_uri": uri,
                "table_version": self.table_version,
                "compression": self.config.compression,
            },
        )
        if self.table_version is None:
            self._logger.info("Delta table does not exist yet, first batch will create it")

    async def prepare_batch(self, table: TableDescriptor) -> BatchHandle:
        if not self._connected:
            raise SinkWriteError("Delta sink is not connected")
        return DeltaBatchHandle(self, table)

    def _write(self, uri: str, df: pl.DataFrame) -> None:
        write_deltalake(
            uri,
            df.to_arrow(),
            mode="append",
            storage_options=self.storage_options,
            writer_properties=self._writer_properties,
        )

    async def append_rows(self, table: TableDescriptor, rows: list[tuple[Any, ...]]) -> int:
        if not rows:
            return 0

        uri = table.uri or self.config.table_uri
        df = pl.DataFrame(rows, schema=SINK_SCHEMA, orient="row")

        await self._wait_for_inflight(uri)

        start = time.perf_counter()
        future = asyncio.ensure_future(asyncio.to_thread(self._write, uri, df))
        self._inflight = future
        try:
            await asyncio.wait_for(
                asyncio.shield(future),
                timeout=self.config.max_execution_seconds,
            )
        except asyncio.TimeoutError as e:
            future.add_done_callback(self._log_late_commit)
            raise SinkWriteError(
                f"Delta commit exceeded {self.config.max_execution_seconds}s",
                cause=e,
                context={"table_uri": uri},
            ) from e
        except Exception as e:
            raise wrap_exception(e, SinkWriteError, context={"table_uri": uri}) from e

        self._logger.debug(
            "Delta append committed",
            extra={
                "table": table.name,
                "records_written": len(df),
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            },
        )
        return len(df)

    async def _wait_for_inflight(self, uri: str) -> None:
        inflight = self._inflight
        if inflight is None or inflight.done():
            return
        self._logger.warning(
            "Previous Delta commit still running, waiting for it",
            extra={"table_uri": uri},
        )
        await asyncio.wait({inflight}, timeout=self.config.max_execution_seconds)
        if not inflight.done():
            raise SinkWriteError(
                f"Previous Delta commit still running after {self.config.max_execution_seconds}s",
                context={"table_uri": uri},
            )

    def _log_late_commit(self, future: asyncio.Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is None:
            self._logger.warning("Timed-out Delta commit completed late, records will be rewritten")
        else:
            self._logger.warning(
                "Timed-out Delta commit failed",
                extra={"error_message": str(exc)[:500]},
            )

    async def close(self) -> None:
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            await asyncio.wait({inflight}, timeout=self.config.max_execution_seconds)
            if not inflight.done():
                self._logger.warning("Closing Delta sink with a commit still running")
        if self._connected:
            self._connected = False
            update_connection_status("sink", connected=False)
            self._logger.info("Delta sink closed")
