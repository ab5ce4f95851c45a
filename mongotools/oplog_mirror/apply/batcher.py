"""
Batch accumulator for oplog entries awaiting apply.

The accumulator only knows about the size trigger. The coordinator owns
the timer trigger and decides when a non-empty buffer is flushed on a tick.

Invariants:
    - Entries keep their arrival order
    - The buffer never holds more than max_batch_size entries
    - The buffer is cleared in place after every flush attempt
"""

from __future__ import annotations

from typing import Any

from ..oplog.base import LogEntry

DEFAULT_MAX_BATCH_SIZE = 10000


class BatchAccumulator:
    """Buffers entries until a size or timer trigger flushes them.

    Thread safety:
        Mutated only by the coordinator task.

    Example:
        >>> batcher = BatchAccumulator(max_batch_size=2)
        >>> batcher.add(entry1)
        False
        >>> batcher.add(entry2)
        True
    """

    def __init__(self, max_batch_size: int = DEFAULT_MAX_BATCH_SIZE) -> None:
        if max_batch_size < 1:
            raise ValueError(f"max_batch_size must be at least 1, got {max_batch_size}")

        self.max_batch_size = max_batch_size
        self._entries: list[LogEntry] = []

    def add(self, entry: LogEntry) -> bool:
        """Append an entry.

        Returns:
            True if the buffer has reached max_batch_size and must be flushed
        """
        if len(self._entries) >= self.max_batch_size:
            raise OverflowError("batch is full, flush before adding more entries")

        self._entries.append(entry)
        return len(self._entries) >= self.max_batch_size

    def clear(self) -> None:
        del self._entries[:]

    @property
    def entries(self) -> list[LogEntry]:
        """The buffered entries, in order. Not a copy."""
        return self._entries

    @property
    def is_empty(self) -> bool:
        return not self._entries

    @property
    def is_full(self) -> bool:
        return len(self._entries) >= self.max_batch_size

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "buffered": len(self._entries),
            "max_batch_size": self.max_batch_size,
        }
