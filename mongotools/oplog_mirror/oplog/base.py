"""
Base types for reading a MongoDB oplog.

This module defines the LogEntry record read from the source oplog, the
operation codes it can carry, namespace handling, hybrid timestamp helpers
and the OplogCursor protocol that source backends implement.

Invariants:
    - Timestamps are non-decreasing along a cursor; ties broken by counter
    - LogEntry.raw is passed to the destination untouched
    - Only entries with op == "n" are considered no-ops

How to change safely:
    - New operation codes need no changes; unknown codes are forwarded
    - Protocol changes require updating the pymongo and in-memory backends
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Protocol, runtime_checkable

from bson.timestamp import Timestamp

from ..errors import StreamError

logger = logging.getLogger(__name__)

# High-detail debug level, below logging.DEBUG
TRACE = 5
logging.addLevelName(TRACE, "TRACE")


class OperationKind(str, Enum):
    """Operation codes found in the "op" field of an oplog entry."""

    INSERT = "i"
    UPDATE = "u"
    DELETE = "d"
    COMMAND = "c"
    NOOP = "n"
    DB_DECLARE = "db"


@dataclass(frozen=True)
class Namespace:
    """A fully qualified "<db>.<collection>" namespace."""

    database: str
    collection: str

    def __str__(self) -> str:
        return f"{self.database}.{self.collection}"


def timestamp_to_int(ts: Timestamp) -> int:
    """Pack a hybrid timestamp into its 64-bit integer form."""
    return (ts.time << 32) | ts.inc


@dataclass
class LogEntry:
    """A single entry read from the source oplog.

    Attributes:
        ts: Hybrid timestamp of the operation
        op: Operation code ("i", "u", "d", "c", "n", ...)
        ns: Namespace the operation applies to
        o: Operation payload document
        o2: Update selector document, for updates only
        raw: The document exactly as read, sent as-is to the destination

    Example:
        {
            "ts": Timestamp(1700000040, 1),
            "op": "u",
            "ns": "app.users",
            "o": {"$set": {"name": "Alice"}},
            "o2": {"_id": 42}
        }
    """

    ts: Timestamp
    op: str
    ns: str
    o: dict[str, Any]
    o2: dict[str, Any] | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> LogEntry:
        """Create from a raw oplog document.

        Raises:
            StreamError: If the document lacks "ts" or "op"
        """
        missing = [f for f in ("ts", "op") if f not in doc]
        if missing:
            raise StreamError(f"Malformed oplog entry, missing fields: {missing}")

        return cls(
            ts=doc["ts"],
            op=doc["op"],
            ns=doc.get("ns", ""),
            o=doc.get("o", {}),
            o2=doc.get("o2"),
            raw=doc,
        )

    @property
    def kind(self) -> OperationKind | None:
        """Known operation kind, or None for codes this tool does not know."""
        try:
            return OperationKind(self.op)
        except ValueError:
            return None

    @property
    def is_noop(self) -> bool:
        return self.op == OperationKind.NOOP.value

    def __str__(self) -> str:
        return f"LogEntry(op={self.op}, ns={self.ns}, ts={self.ts.time}:{self.ts.inc})"


@runtime_checkable
class OplogCursor(Protocol):
    """Protocol for the raw tailing cursor a Session hands back.

    The pymongo AsyncCursor satisfies it directly; the in-memory backend
    provides its own implementation for tests.

    Ordering contract:
        Documents are yielded in oplog order.

    Termination contract:
        Iteration stops once a fetch has waited for the idle bound without
        new documents. The cursor cannot be restarted afterwards.
    """

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the server-side cursor."""
        ...

    @property
    @abstractmethod
    def alive(self) -> bool:
        """Whether more documents may still be returned."""
        ...
