"""
Stream producer: reads the tailing cursor and feeds the coordinator.

Runs as its own asyncio task. No-op entries are dropped here; every other
entry is put on a bounded hand-off queue. Because the queue holds at most
one entry, `put` suspends whenever the coordinator is busy applying a batch,
which is the only backpressure between reading and writing.

Invariants:
    - Entries are forwarded in exactly the order they were read
    - No-op entries are never forwarded
    - The producer never tells the coordinator to stop; finishing the task
      is the only signal it gives

How to change safely:
    - Never replace the hand-off with an unbounded queue; memory would no
      longer be bounded by the batch size
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..errors import StreamError
from .base import TRACE, LogEntry
from .cursor import StreamCursor

logger = logging.getLogger(__name__)


class StreamProducer:
    """Forwards non-noop oplog entries from a StreamCursor to a hand-off queue.

    Attributes:
        cursor: Tailing cursor to read from
        handoff: Bounded queue shared with the coordinator
        error: Read error that ended the stream, if any

    Example:
        >>> handoff = asyncio.Queue(maxsize=1)
        >>> producer = StreamProducer(cursor, handoff)
        >>> task = asyncio.create_task(producer.run())
    """

    def __init__(self, cursor: StreamCursor, handoff: asyncio.Queue[LogEntry]) -> None:
        if handoff.maxsize < 1:
            raise ValueError("handoff queue must be bounded")

        self.cursor = cursor
        self.handoff = handoff
        self.error: StreamError | None = None

        self._forwarded_count = 0
        self._skipped_count = 0
        self._finished = False

    async def run(self) -> None:
        """Read the cursor dry, forwarding entries until it is exhausted."""
        try:
            async for entry in self.cursor:
                if entry.is_noop:
                    self._skipped_count += 1
                    logger.log(TRACE, f"skipping no-op for namespace `{entry.ns}`")
                    continue

                await self.handoff.put(entry)
                self._forwarded_count += 1

                # first entry: operator confirms it against the destination
                if self._forwarded_count == 1:
                    logger.info(f"Got first oplog with Timestamp: {entry.ts.time}")
                    logger.info(
                        "If this is newer than the destination's last applied oplog, stop this."
                    )

        except StreamError as e:
            self.error = e
            logger.error(f"error querying oplog: {e}")
            return

        finally:
            self._finished = True

        logger.debug(f"done applying {self._forwarded_count} oplog entries")

    @property
    def forwarded_count(self) -> int:
        return self._forwarded_count

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def stats(self) -> dict[str, Any]:
        """Get producer statistics."""
        return {
            "finished": self._finished,
            "forwarded_count": self._forwarded_count,
            "skipped_noops": self._skipped_count,
            "error": str(self.error) if self.error else None,
        }
