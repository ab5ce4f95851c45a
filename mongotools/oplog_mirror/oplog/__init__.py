"""
Oplog reading for the oplog mirror.

This module handles the source side:
- LogEntry model and hybrid timestamp helpers
- Building the tailing cursor from a look-back window
- The producer task that filters no-ops and feeds the coordinator
- An in-memory oplog for tests
"""

from .base import TRACE, LogEntry, Namespace, OperationKind, OplogCursor, timestamp_to_int
from .cursor import StreamCursor, build_tailing_cursor, compute_threshold, split_namespace
from .memory import InMemoryOplog, InMemoryTailCursor
from .producer import StreamProducer

__all__ = [
    "TRACE",
    "InMemoryOplog",
    "InMemoryTailCursor",
    "LogEntry",
    "Namespace",
    "OperationKind",
    "OplogCursor",
    "StreamCursor",
    "StreamProducer",
    "build_tailing_cursor",
    "compute_threshold",
    "split_namespace",
    "timestamp_to_int",
]
