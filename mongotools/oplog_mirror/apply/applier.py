"""
Destination applier for the oplog mirror.

Each flush becomes a single applyOps admin command carrying the batch's
entries in their original order. The destination applies them as one unit.
The raw response is turned into an Applied or Rejected result so callers
have to handle both outcomes explicitly.

Invariants:
    - Exactly one applyOps request per call, never retried
    - Entries are sent untouched and in batch order
    - Transport failures raise ApplyError; an ok: 0 reply is a Rejected

How to change safely:
    - Never split a batch into several requests; batch atomicity relies on it
    - A destination that applies a prefix before failing is not detected
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Sequence, Union

from bson.timestamp import Timestamp
from pymongo.errors import PyMongoError

from ..errors import ApplyError
from ..oplog.base import LogEntry

if TYPE_CHECKING:
    from ..session import Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Applied:
    """The destination applied the whole batch.

    Attributes:
        count: Number of entries applied
        last_timestamp: Timestamp of the last entry in the batch
    """

    count: int
    last_timestamp: Timestamp


@dataclass(frozen=True)
class Rejected:
    """The destination answered ok: 0.

    Attributes:
        reason: Server error message
    """

    reason: str


ApplyResult = Union[Applied, Rejected]


class DestinationApplier:
    """Applies batches of oplog entries to the destination server.

    Attributes:
        session: Destination session

    Example:
        >>> applier = DestinationApplier(dest_session)
        >>> result = await applier.apply(batch)
        >>> if isinstance(result, Rejected):
        ...     raise ApplyError(result.reason)
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self._applied_total = 0
        self._apply_calls = 0
        self._last_applied: Timestamp | None = None

    async def apply(self, batch: Sequence[LogEntry]) -> ApplyResult:
        """Apply a batch with one applyOps command.

        Args:
            batch: Non-empty, ordered entries

        Returns:
            Applied on success, Rejected if the server reported ok: 0

        Raises:
            ValueError: If the batch is empty
            ApplyError: If the command could not be executed
        """
        if not batch:
            raise ValueError("cannot apply an empty batch")

        command = {"applyOps": [entry.raw for entry in batch]}
        self._apply_calls += 1

        try:
            response = await self.session.admin_command(command)
        except PyMongoError as e:
            raise ApplyError(f"error applying ops: {e}") from e

        result = self._interpret(response, batch)

        if isinstance(result, Applied):
            self._applied_total += result.count
            self._last_applied = result.last_timestamp
            logger.info(
                f"{result.count} oplogs have been applied, total: {self._applied_total}. "
                f"Last: {result.last_timestamp.time}",
                extra={
                    "applied": result.count,
                    "applied_total": self._applied_total,
                    "last_ts": result.last_timestamp.time,
                    "last_inc": result.last_timestamp.inc,
                },
            )
        else:
            logger.error(
                "destination rejected batch",
                extra={"batch_size": len(batch), "reason": result.reason},
            )

        return result

    def _interpret(self, response: dict[str, Any], batch: Sequence[LogEntry]) -> ApplyResult:
        """Turn the raw {ok, errmsg} reply into an ApplyResult."""
        if response.get("ok"):
            return Applied(count=len(batch), last_timestamp=batch[-1].ts)
        return Rejected(reason=response.get("errmsg") or "unknown error")

    @property
    def applied_total(self) -> int:
        return self._applied_total

    @property
    def last_applied(self) -> Timestamp | None:
        return self._last_applied

    @property
    def stats(self) -> dict[str, Any]:
        """Get applier statistics."""
        return {
            "apply_calls": self._apply_calls,
            "applied_total": self._applied_total,
            "last_applied": self._last_applied.time if self._last_applied else None,
        }
