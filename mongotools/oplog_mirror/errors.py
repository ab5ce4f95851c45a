"""
Error taxonomy for the oplog mirror.

Every fatal condition surfaces to the caller as exactly one MirrorError
subclass. There is no partial-success return value: a run either keeps
going or ends with one of these.

Invariants:
    - ConfigurationError is raised before any connection is attempted
    - MirrorConnectionError and ApplyError are never retried
    - StreamError only stops the producer; queued entries are still applied
"""

from __future__ import annotations


class MirrorError(Exception):
    """Base exception for oplog mirror failures."""

    pass


class ConfigurationError(MirrorError):
    """Invalid configuration, such as a namespace without a collection."""

    pass


class MirrorConnectionError(MirrorError):
    """A session to the source or destination server could not be obtained."""

    pass


class StreamError(MirrorError):
    """Reading the tailing cursor on the source failed."""

    pass


class ApplyError(MirrorError):
    """The destination rejected or could not execute a batch."""

    pass
