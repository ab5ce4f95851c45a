"""
In-memory destination for testing.

Records every applyOps request it receives and answers like a server
would. Failures can be injected either as an ok: 0 reply or as a raised
driver exception.

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep admin_command compatible with Session.admin_command
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from typing import Any

logger = logging.getLogger(__name__)


class InMemoryDestination:
    """Fake destination server that accepts applyOps commands.

    Example:
        >>> dest = InMemoryDestination()
        >>> await dest.admin_command({"applyOps": [{"op": "i", ...}]})
        {'ok': 1.0, 'applied': 1}
        >>> dest.applied_entries
        [{'op': 'i', ...}]
    """

    def __init__(self, apply_delay_seconds: float = 0.0) -> None:
        self.apply_delay_seconds = apply_delay_seconds
        self.batches: list[list[dict[str, Any]]] = []
        self.commands: list[dict[str, Any]] = []
        self._reject_with: str | None = None
        self._raise: Exception | None = None
        self._applied = asyncio.Event()

    async def admin_command(self, command: dict[str, Any]) -> dict[str, Any]:
        """Handle an admin command, only applyOps is understood."""
        self.commands.append(command)

        if self._raise is not None:
            raise self._raise

        if "applyOps" not in command:
            return {"ok": 0.0, "errmsg": f"no such command: '{next(iter(command), '')}'"}

        if self.apply_delay_seconds:
            await asyncio.sleep(self.apply_delay_seconds)

        if self._reject_with is not None:
            return {"ok": 0.0, "errmsg": self._reject_with, "code": 11000}

        ops = copy.deepcopy(command["applyOps"])
        self.batches.append(ops)

        applied, self._applied = self._applied, asyncio.Event()
        applied.set()

        return {"ok": 1.0, "applied": len(ops), "results": [True] * len(ops)}

    # Testing helpers

    def reject_with(self, errmsg: str) -> None:
        """Answer every following applyOps with ok: 0 and this message."""
        self._reject_with = errmsg

    def raise_on_apply(self, exception: Exception) -> None:
        """Raise this exception on every following command."""
        self._raise = exception

    @property
    def apply_calls(self) -> int:
        return sum(1 for c in self.commands if "applyOps" in c)

    @property
    def applied_entries(self) -> list[dict[str, Any]]:
        """All applied entries, batches concatenated in order."""
        return [op for batch in self.batches for op in batch]

    async def wait_for_entries(self, count: int, timeout: float = 5.0) -> bool:
        """Wait until at least `count` entries were applied (testing helper).

        Returns:
            True if count reached, False if timeout
        """
        deadline = time.monotonic() + timeout
        while len(self.applied_entries) < count:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            try:
                await asyncio.wait_for(self._applied.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return False
        return True
