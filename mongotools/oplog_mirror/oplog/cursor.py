"""
Tailing cursor construction for the source oplog.

Computes the resume threshold from a look-back window and opens a tailing,
await-data query over the oplog collection, wrapped in a StreamCursor that
yields LogEntry objects.

Invariants:
    - The namespace is validated before any session is touched
    - threshold = Timestamp(now - lookback, 0)
    - A StreamCursor is single-use; reopen from a new threshold instead

How to change safely:
    - Keep the query to a single {"ts": {"$gte": ...}} predicate so the
      server can use its oplog replay fast path
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, AsyncIterator

from bson.errors import BSONError
from bson.timestamp import Timestamp
from pymongo.errors import PyMongoError

from ..errors import ConfigurationError, StreamError
from .base import LogEntry, Namespace, OplogCursor

if TYPE_CHECKING:
    from ..session import Session

logger = logging.getLogger(__name__)

DEFAULT_IDLE_WAIT_SECONDS = 600

_INVALID_DB_CHARS = set('/\\. "$')


def split_namespace(ns: str) -> Namespace:
    """Split and validate a "<db>.<collection>" namespace.

    Args:
        ns: Fully qualified namespace, e.g. "local.oplog.rs"

    Returns:
        Namespace with database and collection parts

    Raises:
        ConfigurationError: If the database part is empty or invalid, or the
            collection part is missing
    """
    database, _, collection = ns.partition(".")

    if not database:
        raise ConfigurationError(f"invalid namespace `{ns}`: database name is empty")

    bad = sorted(_INVALID_DB_CHARS.intersection(database))
    if bad:
        raise ConfigurationError(
            f"invalid namespace `{ns}`: database name contains invalid characters {bad}"
        )

    if not collection:
        raise ConfigurationError("the oplog namespace must specify a collection")

    return Namespace(database=database, collection=collection)


def compute_threshold(lookback_seconds: int, now: float | None = None) -> Timestamp:
    """Lower bound for the oplog query, `lookback_seconds` before `now`.

    A window reaching back past the epoch starts at the beginning of the oplog.

    >>> compute_threshold(60, now=1_700_000_100)
    Timestamp(1700000040, 0)
    """
    if now is None:
        now = time.time()
    return Timestamp(max(0, int(now) - lookback_seconds), 0)


class StreamCursor:
    """An open tailing query over the source oplog.

    Iterating yields LogEntry objects in oplog order. Iteration ends when a
    fetch has waited `idle_wait_seconds` without new entries, or when the
    server closes the cursor. Driver errors are raised as StreamError.

    Attributes:
        namespace: Oplog namespace being tailed
        threshold: Lower timestamp bound of the query
        idle_wait_seconds: How long to wait for new entries before giving up
    """

    def __init__(
        self,
        cursor: OplogCursor,
        namespace: Namespace,
        threshold: Timestamp,
        idle_wait_seconds: float = DEFAULT_IDLE_WAIT_SECONDS,
    ) -> None:
        self._cursor = cursor
        self.namespace = namespace
        self.threshold = threshold
        self.idle_wait_seconds = idle_wait_seconds
        self._closed = False

    def __aiter__(self) -> AsyncIterator[LogEntry]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[LogEntry]:
        loop = asyncio.get_running_loop()
        last_seen = loop.time()

        try:
            while self._cursor.alive and not self._closed:
                async for doc in self._cursor:
                    last_seen = loop.time()
                    yield LogEntry.from_document(doc)

                if loop.time() - last_seen >= self.idle_wait_seconds:
                    logger.debug(
                        f"no new oplog entries for {self.idle_wait_seconds}s, "
                        "ending tailing cursor",
                        extra={"namespace": str(self.namespace)},
                    )
                    break
        except (PyMongoError, BSONError) as e:
            raise StreamError(f"error reading oplog: {e}") from e

    async def close(self) -> None:
        """Close the underlying cursor. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        await self._cursor.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def __repr__(self) -> str:
        return (
            f"StreamCursor(ns={self.namespace}, "
            f"threshold={self.threshold.time}:{self.threshold.inc})"
        )


async def build_tailing_cursor(
    session: Session,
    namespace: Namespace,
    lookback_seconds: int,
    idle_wait_seconds: float = DEFAULT_IDLE_WAIT_SECONDS,
    now: float | None = None,
) -> StreamCursor:
    """Open a tailing cursor over the oplog, starting `lookback_seconds` ago.

    Args:
        session: Source session
        namespace: Oplog namespace, already validated
        lookback_seconds: How far in the past to start reading
        idle_wait_seconds: Upper bound on a single blocking fetch
        now: Wall-clock override, in seconds since the epoch

    Returns:
        StreamCursor positioned at the threshold
    """
    threshold = compute_threshold(lookback_seconds, now)
    query: dict[str, Any] = {"ts": {"$gte": threshold}}

    logger.debug(
        "opening tailing cursor",
        extra={
            "namespace": str(namespace),
            "threshold": threshold.time,
            "idle_wait_seconds": idle_wait_seconds,
        },
    )

    try:
        raw = await session.tail(
            namespace.database,
            namespace.collection,
            query,
            idle_wait_seconds,
        )
    except PyMongoError as e:
        raise StreamError(f"error opening oplog cursor: {e}") from e

    return StreamCursor(raw, namespace, threshold, idle_wait_seconds)
