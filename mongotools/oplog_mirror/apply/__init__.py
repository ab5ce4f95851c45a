"""
Apply module for the oplog mirror.

Batches forwarded oplog entries and applies each batch to the destination
with a single applyOps command.
"""

from .applier import Applied, ApplyResult, DestinationApplier, Rejected
from .batcher import BatchAccumulator
from .memory import InMemoryDestination

__all__ = [
    "Applied",
    "ApplyResult",
    "BatchAccumulator",
    "DestinationApplier",
    "InMemoryDestination",
    "Rejected",
]
