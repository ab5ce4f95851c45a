"""
Oplog mirror test suite.

This package contains:
- unit/: Unit tests (no server needed, in-memory oplog and destination)
- integration/: Whole pipeline runs over the in-memory backends
"""
