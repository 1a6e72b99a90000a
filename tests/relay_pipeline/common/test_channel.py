"""Tests for the bounded inbound channel."""

import asyncio

import pytest

from core.errors.exceptions import ChannelClosedError
from relay_pipeline.common.channel import InboundChannel


class TestInboundChannel:

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError, match="capacity"):
            InboundChannel(0)

    @pytest.mark.asyncio
    async def test_fifo_order(self, make_records):
        channel = InboundChannel(10)
        records = make_records(5)
        for record in records:
            await channel.put(record)

        received = [await channel.get() for _ in range(5)]

        assert received == records

    @pytest.mark.asyncio
    async def test_put_blocks_when_full(self, make_records):
        channel = InboundChannel(2)
        first, second, third = make_records(3)
        await channel.put(first)
        await channel.put(second)
        assert channel.full()

        blocked = asyncio.create_task(channel.put(third))
        await asyncio.sleep(0.01)
        assert not blocked.done()

        assert await channel.get() is first
        await asyncio.wait_for(blocked, timeout=1)
        assert channel.qsize() == 2

    @pytest.mark.asyncio
    async def test_put_after_close_raises(self, make_record):
        channel = InboundChannel(2)
        channel.close()

        with pytest.raises(ChannelClosedError):
            await channel.put(make_record())

    @pytest.mark.asyncio
    async def test_get_drains_queued_records_after_close(self, make_record):
        channel = InboundChannel(2)
        record = make_record()
        await channel.put(record)
        channel.close()

        assert await channel.get() is record
        with pytest.raises(ChannelClosedError):
            await channel.get()

    @pytest.mark.asyncio
    async def test_discard_pending_drops_without_acking(self, make_records):
        channel = InboundChannel(5)
        records = make_records(3)
        for record in records:
            await channel.put(record)

        assert channel.discard_pending() == 3
        assert channel.qsize() == 0
        assert all(record.ack.calls == 0 for record in records)
