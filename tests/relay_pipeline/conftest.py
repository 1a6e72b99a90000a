"""
Fixtures for relay pipeline tests.

Records are built with ``make_record`` and carry an ack handle that counts
how many times it was awaited. ``FakeSubscription`` stands in for the
Kafka subscription: it feeds a fixed list of records into the inbound
channel and records the calls the worker makes on it.

No broker or object store is needed for anything in here.
"""

import asyncio
import logging
from datetime import UTC, datetime
from itertools import count

import pytest
import pytest_asyncio

from relay_pipeline.common.types import InboundRecord
from relay_pipeline.storage.inmemory import InMemorySinkConnection


class AckCounter:
    """Ack handle that counts calls and can be told to fail."""

    def __init__(self, fail_with: Exception | None = None):
        self.calls = 0
        self.fail_with = fail_with

    async def __call__(self) -> None:
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with


class FakeSubscription:
    """Subscription double with the interface the worker uses."""

    def __init__(self, records: list[InboundRecord] | None = None, hold_open: bool = True):
        self.records = list(records or [])
        self.hold_open = hold_open
        self.enqueued = 0
        self.commit_calls = 0
        self.stop_calls = 0
        self.run_cancelled = False
        self.subscribed = False
        self.redelivered: list[tuple[list[InboundRecord], bool]] = []

    async def subscribe(self) -> None:
        self.subscribed = True

    async def run(self, channel) -> None:
        try:
            for record in self.records:
                await channel.put(record)
                self.enqueued += 1
            if self.hold_open:
                await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.run_cancelled = True
            raise

    async def commit_acked(self) -> dict:
        self.commit_calls += 1
        return {}

    def redeliver(self, records, skipped: bool = False) -> dict:
        self.redelivered.append((list(records), skipped))
        return {}

    async def stop(self) -> None:
        self.stop_calls += 1


@pytest.fixture
def test_logger():
    logger = logging.getLogger("relay_tests")
    logger.setLevel(logging.DEBUG)
    return logger


@pytest.fixture
def make_record():
    """Factory for InboundRecords with counting ack handles."""
    sequence = count()

    def _make(
        subject: str = "chat.v1.messages.room1",
        payload: bytes | None = b'{"text": "hi"}',
        ack: AckCounter | None = None,
        **kwargs,
    ) -> InboundRecord:
        return InboundRecord(
            subject=subject,
            payload=payload,
            sequence=kwargs.pop("sequence", next(sequence)),
            received_at=kwargs.pop("received_at", datetime(2026, 1, 5, 14, 30, tzinfo=UTC)),
            ack=ack or AckCounter(),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_records(make_record):
    def _make_many(n: int, **kwargs) -> list[InboundRecord]:
        return [make_record(**kwargs) for _ in range(n)]

    return _make_many


@pytest_asyncio.fixture
async def memory_sink():
    sink = InMemorySinkConnection()
    await sink.connect()
    yield sink
    await sink.close()


@pytest.fixture
def ack_counter():
    """The AckCounter class, for tests that build their own handles."""
    return AckCounter


@pytest.fixture
def fake_subscription():
    """The FakeSubscription class."""
    return FakeSubscription
