"""
In-memory oplog implementation for testing.

This module provides a simple in-memory source oplog for:
- Unit tests
- Integration tests of the whole pipeline
- Local development without a replica set

Invariants:
    - All data is lost on process exit
    - Cursors see documents in append order, like a capped oplog
    - A fetch blocks up to the cursor's await bound, then returns nothing

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep the cursor compatible with the OplogCursor protocol
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

from bson.timestamp import Timestamp

logger = logging.getLogger(__name__)


class InMemoryOplog:
    """Append-only list of oplog documents that can be tailed.

    Example:
        >>> oplog = InMemoryOplog()
        >>> oplog.append({"ts": Timestamp(100, 1), "op": "i", "ns": "a.b", "o": {}})
        >>> cursor = oplog.tail({"ts": {"$gte": Timestamp(0, 0)}}, 1.0)
        >>> async for doc in cursor:
        ...     print(doc["op"])
    """

    def __init__(self) -> None:
        self._documents: list[dict[str, Any]] = []
        self._appended = asyncio.Event()
        self._failure: Exception | None = None
        self._cursors: list[InMemoryTailCursor] = []

    def append(self, *docs: dict[str, Any]) -> None:
        """Append documents and wake any waiting cursors."""
        self._documents.extend(docs)

        appended, self._appended = self._appended, asyncio.Event()
        appended.set()

        logger.debug("documents appended to in-memory oplog", extra={"count": len(docs)})

    def tail(self, query: dict[str, Any], max_await_seconds: float) -> InMemoryTailCursor:
        """Open a tailing cursor for documents matching {"ts": {"$gte": ...}}."""
        threshold = query.get("ts", {}).get("$gte", Timestamp(0, 0))
        cursor = InMemoryTailCursor(self, threshold, max_await_seconds)
        self._cursors.append(cursor)
        return cursor

    # Testing helpers

    def inject_failure(self, exception: Exception) -> None:
        """The next fetch on any cursor raises this exception."""
        self._failure = exception
        self.append()

    def take_failure(self) -> Exception | None:
        failure, self._failure = self._failure, None
        return failure

    def document_at(self, index: int) -> dict[str, Any] | None:
        if index < len(self._documents):
            return self._documents[index]
        return None

    def wait_handle(self) -> asyncio.Event:
        return self._appended

    @property
    def cursors(self) -> list[InMemoryTailCursor]:
        return list(self._cursors)

    def __len__(self) -> int:
        return len(self._documents)


class InMemoryTailCursor:
    """Tailing cursor over an InMemoryOplog.

    `async for` stops when a fetch waits `max_await_seconds` without new
    documents, mirroring a tailable await-data cursor; the cursor stays
    alive and can be iterated again until closed.
    """

    def __init__(self, oplog: InMemoryOplog, threshold: Timestamp, max_await_seconds: float) -> None:
        self._oplog = oplog
        self.threshold = threshold
        self.max_await_seconds = max_await_seconds
        self._position = 0
        self._alive = True

    @property
    def alive(self) -> bool:
        return self._alive

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self

    async def __anext__(self) -> dict[str, Any]:
        doc = self._next_matching()
        if doc is not None:
            return doc

        handle = self._oplog.wait_handle()
        try:
            await asyncio.wait_for(handle.wait(), timeout=self.max_await_seconds)
        except asyncio.TimeoutError:
            raise StopAsyncIteration

        doc = self._next_matching()
        if doc is None:
            raise StopAsyncIteration
        return doc

    def _next_matching(self) -> dict[str, Any] | None:
        if not self._alive:
            raise StopAsyncIteration

        failure = self._oplog.take_failure()
        if failure is not None:
            self._alive = False
            raise failure

        while True:
            doc = self._oplog.document_at(self._position)
            if doc is None:
                return None
            self._position += 1
            if doc["ts"] >= self.threshold:
                return doc

    async def close(self) -> None:
        self._alive = False

    @property
    def closed(self) -> bool:
        return not self._alive
