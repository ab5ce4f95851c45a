"""
Unit tests for the stream producer.

Tests cover:
- No-op filtering and ordering
- Backpressure through the bounded hand-off
- First-entry and no-op logging
- Read errors
"""

import asyncio
import logging

import pytest
from bson.timestamp import Timestamp
from pymongo.errors import OperationFailure

from mongotools.oplog_mirror.errors import StreamError
from mongotools.oplog_mirror.oplog.base import TRACE, Namespace
from mongotools.oplog_mirror.oplog.cursor import build_tailing_cursor
from mongotools.oplog_mirror.oplog.memory import InMemoryOplog
from mongotools.oplog_mirror.oplog.producer import StreamProducer
from mongotools.oplog_mirror.session import InMemorySession

NOW = 1_700_000_100
PRODUCER_LOGGER = "mongotools.oplog_mirror.oplog.producer"


def _op(offset: int, op: str = "i") -> dict:
    return {
        "ts": Timestamp(NOW - 50 + offset, 1),
        "op": op,
        "ns": "app.users",
        "o": {"_id": offset},
    }


def _drain(queue: asyncio.Queue) -> list:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


class TestStreamProducer:
    """Tests for StreamProducer."""

    @pytest.fixture
    def oplog(self):
        """Create a fresh in-memory oplog."""
        return InMemoryOplog()

    async def _cursor(self, oplog: InMemoryOplog, idle_wait_seconds: float = 0.05):
        session = InMemorySession(oplog=oplog)
        return await build_tailing_cursor(
            session,
            Namespace("local", "oplog.rs"),
            60,
            idle_wait_seconds=idle_wait_seconds,
            now=NOW,
        )

    @pytest.mark.asyncio
    async def test_filters_noops_and_keeps_order(self, oplog):
        """No-ops are dropped, everything else is forwarded in order."""
        oplog.append(_op(1, "i"), _op(2, "n"), _op(3, "u"), _op(4, "n"), _op(5, "d"), _op(6, "c"))
        handoff: asyncio.Queue = asyncio.Queue(maxsize=10)

        producer = StreamProducer(await self._cursor(oplog), handoff)
        await producer.run()

        forwarded = _drain(handoff)
        assert [e.op for e in forwarded] == ["i", "u", "d", "c"]
        assert [e.o["_id"] for e in forwarded] == [1, 3, 5, 6]
        assert producer.forwarded_count == 4
        assert producer.stats["skipped_noops"] == 2
        assert producer.finished
        assert producer.error is None

    @pytest.mark.asyncio
    async def test_requires_bounded_handoff(self, oplog):
        """An unbounded queue is refused."""
        with pytest.raises(ValueError, match="bounded"):
            StreamProducer(await self._cursor(oplog), asyncio.Queue())

    @pytest.mark.asyncio
    async def test_backpressure(self, oplog):
        """The producer stops reading while the hand-off is full."""
        oplog.append(*[_op(i) for i in range(5)])
        handoff: asyncio.Queue = asyncio.Queue(maxsize=1)

        producer = StreamProducer(await self._cursor(oplog, idle_wait_seconds=1.0), handoff)
        task = asyncio.create_task(producer.run())

        try:
            await asyncio.sleep(0.05)
            assert handoff.qsize() == 1
            assert producer.forwarded_count == 1
            assert not producer.finished

            first = await handoff.get()
            await asyncio.sleep(0.01)

            assert first.o["_id"] == 0
            assert producer.forwarded_count == 2
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    @pytest.mark.asyncio
    async def test_first_entry_logged(self, oplog, caplog):
        """The first forwarded entry's timestamp is logged once."""
        caplog.set_level(logging.INFO, logger=PRODUCER_LOGGER)
        oplog.append(_op(0, "n"), _op(10), _op(11))

        producer = StreamProducer(await self._cursor(oplog), asyncio.Queue(maxsize=10))
        await producer.run()

        assert f"Got first oplog with Timestamp: {NOW - 40}" in caplog.text
        assert caplog.text.count("Got first oplog") == 1

    @pytest.mark.asyncio
    async def test_noop_logged_at_trace(self, oplog, caplog):
        """Skipped no-ops are visible at trace level."""
        caplog.set_level(TRACE, logger=PRODUCER_LOGGER)
        oplog.append(_op(1, "n"))

        producer = StreamProducer(await self._cursor(oplog), asyncio.Queue(maxsize=1))
        await producer.run()

        assert "skipping no-op for namespace `app.users`" in caplog.text

    @pytest.mark.asyncio
    async def test_exhaustion_logged(self, oplog, caplog):
        """The end of the stream logs how many entries went through."""
        caplog.set_level(logging.DEBUG, logger=PRODUCER_LOGGER)
        oplog.append(_op(1), _op(2, "n"), _op(3))

        producer = StreamProducer(await self._cursor(oplog), asyncio.Queue(maxsize=10))
        await producer.run()

        assert "done applying 2 oplog entries" in caplog.text

    @pytest.mark.asyncio
    async def test_stream_error_recorded(self, oplog, caplog):
        """A read error ends the producer without losing forwarded entries."""
        oplog.append(_op(1))
        handoff: asyncio.Queue = asyncio.Queue(maxsize=10)

        producer = StreamProducer(await self._cursor(oplog, idle_wait_seconds=2.0), handoff)
        task = asyncio.create_task(producer.run())

        for _ in range(100):
            if producer.forwarded_count == 1:
                break
            await asyncio.sleep(0.01)

        oplog.inject_failure(OperationFailure("cursor killed"))
        await asyncio.wait_for(task, timeout=2.0)

        assert isinstance(producer.error, StreamError)
        assert "cursor killed" in str(producer.error)
        assert producer.finished
        assert [e.o["_id"] for e in _drain(handoff)] == [1]
        assert "error querying oplog" in caplog.text
