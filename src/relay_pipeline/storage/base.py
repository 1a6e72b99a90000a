"""Sink connection contract: prepare a batch, append rows, send once."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from core.errors.exceptions import SinkWriteError
from relay_pipeline.common.types import SinkRow


@dataclass(frozen=True)
class TableDescriptor:
    """Destination table and the column order rows are appended in."""

    name: str
    uri: str = ""
    columns: tuple[str, ...] = SinkRow.COLUMNS


class BatchHandle(ABC):
    """
    Rows staged for one commit.

    ``append`` only stages; nothing is visible in the table until ``send``
    succeeds. A handle can be sent once.
    """

    def __init__(self, table: TableDescriptor):
        self.table = table
        self._rows: list[tuple[Any, ...]] = []
        self._sent = False

    @property
    def rows(self) -> list[tuple[Any, ...]]:
        return self._rows

    def append(self, *fields: Any) -> None:
        if self._sent:
            raise SinkWriteError(f"Batch for {self.table.name} was already sent")
        if len(fields) != len(self.table.columns):
            raise SinkWriteError(
                f"Expected {len(self.table.columns)} fields for {self.table.name}, got {len(fields)}"
            )
        self._rows.append(fields)

    async def send(self) -> int:
        """Commit staged rows in one write. Returns the row count."""
        if self._sent:
            raise SinkWriteError(f"Batch for {self.table.name} was already sent")
        self._sent = True
        return await self._commit(self._rows)

    @abstractmethod
    async def _commit(self, rows: list[tuple[Any, ...]]) -> int:
        ...


class SinkConnection(ABC):
    """Connection to the analytical store."""

    @abstractmethod
    async def connect(self) -> None:
        """
        Validate settings and verify the store is reachable.

        Raises:
            ConfigurationError: ambiguous or incomplete settings
            ConnectError: the store could not be reached
        """

    @abstractmethod
    async def prepare_batch(self, table: TableDescriptor) -> BatchHandle:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...
