"""
Oplog Mirror - replays one MongoDB server's oplog onto another.

The two servers do not form a replica set. Write activity is read from the
source oplog with a tailing cursor and applied to the destination in
batches, one applyOps command per batch.

Architecture:
    ┌──────────────┐     ┌────────────────┐  queue(1)  ┌──────────────────┐
    │ Source oplog │────▶│ StreamProducer │───────────▶│ OplogMirror loop │
    │ (tail cursor)│     │  (drops no-ops)│            │ batch + applyOps │
    └──────────────┘     └────────────────┘            └────────┬─────────┘
                                                                │
                                                                ▼
                                                       ┌──────────────────┐
                                                       │   Destination    │
                                                       └──────────────────┘

Invariants:
    - Entries are applied in exactly the order they were read
    - No-op entries never reach the destination
    - At most one applyOps is in flight at any time
    - Delivery is at-most-once per run; there is no checkpoint or resume

How to change safely:
    - Keep the producer/coordinator hand-off bounded
    - Never retry a failed batch; the destination may hold a prefix of it
"""

__version__ = "0.1.0"

from .errors import (
    ApplyError,
    ConfigurationError,
    MirrorConnectionError,
    MirrorError,
    StreamError,
)
from .pipeline import MirrorStats, OplogMirror, PipelineState

__all__ = [
    "__version__",
    "ApplyError",
    "ConfigurationError",
    "MirrorConnectionError",
    "MirrorError",
    "MirrorStats",
    "OplogMirror",
    "PipelineState",
    "StreamError",
]
