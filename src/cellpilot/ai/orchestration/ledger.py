"""Change ledger for reversible workbook edits.

Every write performed on behalf of the agent is captured as a :class:`RangeChange` holding the
before and after snapshots of one address. The ledger restores ``before`` on revert and keeps the
record around, flagged, as the audit trail.
"""

from __future__ import annotations

import logging
from typing import Iterator

from ...documents.types import DocumentDriver, RangeChange, RangeSnapshot

LOGGER = logging.getLogger(__name__)

__all__ = ["ChangeLedger", "ChangeLedgerError"]


class ChangeLedgerError(RuntimeError):
    """Raised when a revert targets an unknown or already reverted change."""


class ChangeLedger:
    """Records changes in creation order and reverts them through the document driver."""

    def __init__(self, driver: DocumentDriver) -> None:
        self._driver = driver
        self._changes: list[RangeChange] = []
        self._index: dict[str, RangeChange] = {}

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def write(self, before: RangeSnapshot, after: RangeSnapshot, turn_id: str, reason: str) -> RangeChange:
        """Build a change from two snapshots of the same address and record it."""

        change = RangeChange(turn_id=turn_id, reason=reason, before=before, after=after)
        return self.record(change)

    def record(self, change: RangeChange) -> RangeChange:
        if change.change_id in self._index:
            return self._index[change.change_id]
        self._changes.append(change)
        self._index[change.change_id] = change
        LOGGER.debug(
            "Recorded change %s on %s (%s cells)", change.change_id, change.address, change.changed_cell_count
        )
        return change

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, change_id: str) -> RangeChange | None:
        return self._index.get(change_id)

    def changes_for_turn(self, turn_id: str) -> list[RangeChange]:
        return [change for change in self._changes if change.turn_id == turn_id]

    def latest_turn_id(self) -> str | None:
        return self._changes[-1].turn_id if self._changes else None

    def __iter__(self) -> Iterator[RangeChange]:
        return iter(list(self._changes))

    def __len__(self) -> int:
        return len(self._changes)

    # ------------------------------------------------------------------
    # Revert
    # ------------------------------------------------------------------

    async def revert(self, change: RangeChange | str) -> RangeChange:
        """Restore the ``before`` snapshot of ``change`` and flag it as reverted.

        Raises :class:`ChangeLedgerError` for an unknown id or a change that was already reverted;
        callers check ``change.reverted`` first when a silent no-op is wanted.
        """

        target = self._resolve(change)
        if target.reverted:
            raise ChangeLedgerError(f"Change {target.change_id} was already reverted")
        await self._driver.apply_snapshot(target.before)
        target.reverted = True
        LOGGER.info("Reverted change %s on %s", target.change_id, target.address)
        return target

    async def revert_turn(self, turn_id: str) -> list[RangeChange]:
        """Revert every outstanding change of ``turn_id``, newest first."""

        reverted: list[RangeChange] = []
        for change in reversed(self.changes_for_turn(turn_id)):
            if change.reverted:
                continue
            reverted.append(await self.revert(change))
        return reverted

    def _resolve(self, change: RangeChange | str) -> RangeChange:
        if isinstance(change, RangeChange):
            return self.record(change)
        found = self._index.get(change)
        if found is None:
            raise ChangeLedgerError(f"Unknown change {change}")
        return found
