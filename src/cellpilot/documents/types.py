"""Data contract between the agent and a spreadsheet host ("document driver")."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol, Sequence

__all__ = [
    "DocumentError",
    "Grid",
    "RangeSnapshot",
    "RangeChange",
    "WriteRisk",
    "ContextOptions",
    "SheetSummary",
    "WorkbookMap",
    "ContextPack",
    "DocumentDriver",
    "count_changed_cells",
]

Grid = tuple[tuple[Any, ...], ...]


class DocumentError(RuntimeError):
    """Raised by a document driver when an address, sheet or object cannot be resolved."""


# -----------------------------------------------------------------------------
# Snapshots and changes
# -----------------------------------------------------------------------------


def _freeze_grid(rows: Sequence[Sequence[Any]] | None) -> Grid:
    return tuple(tuple(row) for row in (rows or ()))


@dataclass(slots=True, frozen=True)
class RangeSnapshot:
    """Values, formulas and number formats of one rectangular range, captured at a point in time."""

    address: str
    values: Grid = ()
    formulas: Grid = ()
    number_formats: Grid = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", _freeze_grid(self.values))
        object.__setattr__(self, "formulas", _freeze_grid(self.formulas))
        object.__setattr__(self, "number_formats", _freeze_grid(self.number_formats))

    @property
    def row_count(self) -> int:
        return len(self.values)

    @property
    def column_count(self) -> int:
        return max((len(row) for row in self.values), default=0)

    @property
    def cell_count(self) -> int:
        return sum(len(row) for row in self.values)

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "values": [list(row) for row in self.values],
            "formulas": [list(row) for row in self.formulas],
            "numberFormats": [list(row) for row in self.number_formats],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RangeSnapshot":
        return cls(
            address=str(payload.get("address", "")),
            values=payload.get("values") or (),
            formulas=payload.get("formulas") or (),
            number_formats=payload.get("numberFormats") or payload.get("number_formats") or (),
        )


def _cell(grid: Grid, row: int, column: int) -> Any:
    if row >= len(grid) or column >= len(grid[row]):
        return None
    return grid[row][column]


def _comparable(grid: Grid, row: int, column: int) -> Any:
    value = _cell(grid, row, column)
    return None if value == "" else value


def count_changed_cells(before: RangeSnapshot, after: RangeSnapshot) -> int:
    """Count grid positions whose value or formula differs.

    Missing cells, ``None`` and ``""`` all compare as empty, so grids of different shapes only
    count the positions that hold something on one side.
    """

    changed = 0
    for row in range(max(len(before.values), len(after.values))):
        before_row = before.values[row] if row < len(before.values) else ()
        after_row = after.values[row] if row < len(after.values) else ()
        for column in range(max(len(before_row), len(after_row))):
            if _comparable(before.values, row, column) != _comparable(after.values, row, column) or _comparable(
                before.formulas, row, column
            ) != _comparable(after.formulas, row, column):
                changed += 1
    return changed


@dataclass(slots=True)
class RangeChange:
    """Audit record for one write: the before/after snapshots of the same address.

    ``reverted`` is the only field that changes after creation.
    """

    turn_id: str
    reason: str
    before: RangeSnapshot
    after: RangeSnapshot
    change_id: str = field(default_factory=lambda: f"change-{uuid.uuid4().hex[:12]}")
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    reverted: bool = False

    def __post_init__(self) -> None:
        if self.before.address != self.after.address:
            raise ValueError(
                f"Change snapshots must share an address ({self.before.address!r} != {self.after.address!r})"
            )

    @property
    def address(self) -> str:
        return self.after.address

    @property
    def changed_cell_count(self) -> int:
        return count_changed_cells(self.before, self.after)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.change_id,
            "turnId": self.turn_id,
            "reason": self.reason,
            "address": self.address,
            "before": self.before.to_dict(),
            "after": self.after.to_dict(),
            "changedCellCount": self.changed_cell_count,
            "createdAt": self.created_at.isoformat(),
            "reverted": self.reverted,
        }


@dataclass(slots=True, frozen=True)
class WriteRisk:
    """What a bulk write would overwrite, derived from a before-snapshot."""

    total_cells: int
    non_empty_cells: int
    formula_cells: int

    @property
    def has_formula_overwrite(self) -> bool:
        return self.formula_cells > 0

    @property
    def has_non_empty_overwrite(self) -> bool:
        return self.non_empty_cells > 0

    @classmethod
    def from_snapshot(cls, snapshot: RangeSnapshot) -> "WriteRisk":
        non_empty = 0
        formulas = 0
        for row_index, row in enumerate(snapshot.values):
            for column_index, value in enumerate(row):
                formula = _cell(snapshot.formulas, row_index, column_index)
                if isinstance(formula, str) and formula.startswith("="):
                    formulas += 1
                if value is not None and value != "":
                    non_empty += 1
        return cls(total_cells=snapshot.cell_count, non_empty_cells=non_empty, formula_cells=formulas)


# -----------------------------------------------------------------------------
# Context pack
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ContextOptions:
    """How much of the workbook a context pack should include."""

    include_tables: bool = True
    include_charts: bool = True
    include_pivots: bool = True
    max_rows: int = 20
    max_columns: int = 20


@dataclass(slots=True, frozen=True)
class SheetSummary:
    name: str
    used_rows: int = 0
    used_columns: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "usedRows": self.used_rows, "usedColumns": self.used_columns}


@dataclass(slots=True, frozen=True)
class WorkbookMap:
    sheets: tuple[SheetSummary, ...] = ()
    tables: tuple[str, ...] = ()
    pivot_tables: tuple[str, ...] = ()
    charts: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "sheets": [sheet.to_dict() for sheet in self.sheets],
            "tables": list(self.tables),
            "pivotTables": list(self.pivot_tables),
            "charts": list(self.charts),
        }


@dataclass(slots=True, frozen=True)
class ContextPack:
    """Grounding snapshot sent to the model: active sheet, clipped selection and a workbook map."""

    active_sheet: str
    selection: RangeSnapshot
    workbook_map: WorkbookMap = field(default_factory=WorkbookMap)

    def to_dict(self) -> dict[str, Any]:
        return {
            "activeSheet": self.active_sheet,
            "selection": self.selection.to_dict(),
            "workbookMap": self.workbook_map.to_dict(),
        }


# -----------------------------------------------------------------------------
# Driver protocol
# -----------------------------------------------------------------------------


class DocumentDriver(Protocol):
    """Async primitives the agent needs from a spreadsheet host.

    Every mutating write returns a :class:`RangeChange` built from a snapshot taken immediately
    before the write and another taken after it.
    """

    async def get_context_pack(self, options: ContextOptions) -> ContextPack: ...

    async def read_range(self, address: str) -> RangeSnapshot: ...

    async def get_used_range(self, sheet: str) -> RangeSnapshot: ...

    async def write_values(self, address: str, values: Sequence[Sequence[Any]], turn_id: str, reason: str) -> RangeChange: ...

    async def write_formulas(self, address: str, formulas: Sequence[Sequence[str]], turn_id: str, reason: str) -> RangeChange: ...

    async def apply_snapshot(self, snapshot: RangeSnapshot) -> None: ...

    async def get_precedents(self, address: str, depth: int = 1) -> list[str]: ...

    async def get_dependents(self, address: str, depth: int = 1) -> list[str]: ...

    async def find_errors(self, sheet: str | None = None) -> list[dict[str, str]]: ...

    async def get_table(self, name: str) -> dict[str, str]: ...

    async def list_pivots(self) -> list[str]: ...

    async def list_charts(self) -> list[str]: ...

    async def format_range(
        self,
        address: str,
        turn_id: str,
        reason: str,
        *,
        number_format: str | None = None,
        bold: bool | None = None,
        fill_color: str | None = None,
        border_color: str | None = None,
    ) -> RangeChange: ...

    async def sort_range(
        self, address: str, key_column: int, turn_id: str, reason: str, ascending: bool = True
    ) -> RangeChange: ...

    async def filter_table(self, table_name: str, column_name: str, criteria: str) -> None: ...

    async def add_sheet(self, name: str) -> None: ...

    async def rename_sheet(self, current_name: str, new_name: str) -> None: ...

    async def add_conditional_format(
        self,
        address: str,
        *,
        formula1: str | None = None,
        operator: str | None = None,
        fill_color: str | None = None,
    ) -> None: ...

    async def clear_conditional_formats(self, address: str) -> None: ...

    async def set_data_validation_dropdown(self, address: str, values: Sequence[str]) -> None: ...

    async def create_chart(
        self,
        source_address: str,
        chart_type: str,
        *,
        target_sheet: str | None = None,
        title: str | None = None,
    ) -> str: ...

    async def update_chart(
        self,
        chart_name: str,
        sheet_name: str,
        *,
        title: str | None = None,
        legend_visible: bool | None = None,
    ) -> None: ...

    async def create_pivot(self, source_address: str, destination_address: str, name: str) -> None: ...

    async def update_pivot_filters(
        self, sheet_name: str, pivot_name: str, field_name: str, visible_items: Sequence[str]
    ) -> None: ...

    async def add_comment(self, address: str, text: str) -> None: ...
