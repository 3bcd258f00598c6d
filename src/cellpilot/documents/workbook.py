"""In-memory workbook implementing the :class:`~cellpilot.documents.types.DocumentDriver` contract.

Used by the command line entry point and the test-suite. Formulas are stored verbatim and are not
evaluated; a formula cell keeps whatever cached value it was loaded or restored with.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from .addresses import REFERENCE_PATTERN, CellRange, index_to_column, parse_range, split_address
from .types import (
    ContextOptions,
    ContextPack,
    DocumentError,
    RangeChange,
    RangeSnapshot,
    SheetSummary,
    WorkbookMap,
)

__all__ = ["Cell", "Worksheet", "InMemoryWorkbook"]

LOGGER = logging.getLogger(__name__)

_DEFAULT_FORMAT = "General"


@dataclass(slots=True)
class Cell:
    value: Any = None
    formula: str | None = None
    number_format: str = _DEFAULT_FORMAT
    bold: bool = False
    fill_color: str | None = None
    border_color: str | None = None

    @property
    def is_empty(self) -> bool:
        return (self.value is None or self.value == "") and not self.formula

    def formula_text(self) -> str:
        if self.formula:
            return self.formula
        return "" if self.value is None else str(self.value)


@dataclass(slots=True)
class Worksheet:
    name: str
    cells: dict[tuple[int, int], Cell] = field(default_factory=dict)
    conditional_formats: list[dict[str, Any]] = field(default_factory=list)
    validations: dict[str, list[str]] = field(default_factory=dict)
    comments: dict[str, str] = field(default_factory=dict)

    def cell(self, row: int, column: int) -> Cell:
        return self.cells.get((row, column)) or Cell()

    def ensure_cell(self, row: int, column: int) -> Cell:
        existing = self.cells.get((row, column))
        if existing is None:
            existing = self.cells[(row, column)] = Cell()
        return existing

    def used_range(self) -> CellRange | None:
        occupied = [key for key, cell in self.cells.items() if not cell.is_empty]
        if not occupied:
            return None
        rows = [row for row, _ in occupied]
        columns = [column for _, column in occupied]
        return CellRange(self.name, min(rows), min(columns), max(rows), max(columns))


@dataclass(slots=True)
class _Table:
    name: str
    range: CellRange
    filters: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class _Chart:
    name: str
    sheet: str
    source: str
    chart_type: str
    title: str | None = None
    legend_visible: bool = True


@dataclass(slots=True)
class _Pivot:
    name: str
    sheet: str
    source: str
    destination: str
    filters: dict[str, list[str]] = field(default_factory=dict)


class InMemoryWorkbook:
    """A small spreadsheet model: sheets of cells plus tables, charts and pivots."""

    def __init__(self, sheet_names: Iterable[str] = ("Sheet1",), *, selection: str | None = None) -> None:
        self._sheets: dict[str, Worksheet] = {}
        for name in sheet_names:
            self._sheets[name] = Worksheet(name)
        if not self._sheets:
            self._sheets["Sheet1"] = Worksheet("Sheet1")
        self.active_sheet = next(iter(self._sheets))
        self._selection = selection or f"{self.active_sheet}!A1"
        self._tables: dict[str, _Table] = {}
        self._charts: list[_Chart] = []
        self._pivots: list[_Pivot] = []

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "InMemoryWorkbook":
        """Build a workbook from ``{"sheets": {"Name": [[...rows...]]}, ...}``.

        Strings starting with ``=`` are loaded as formulas.
        """

        sheets = payload.get("sheets") or {"Sheet1": []}
        workbook = cls(list(sheets))
        for name, rows in sheets.items():
            sheet = workbook._sheets[name]
            for row_index, row in enumerate(rows or []):
                for column_index, raw in enumerate(row or []):
                    if raw is None or raw == "":
                        continue
                    cell = sheet.ensure_cell(row_index, column_index)
                    if isinstance(raw, str) and raw.startswith("="):
                        cell.formula = raw
                    else:
                        cell.value = raw
        active = payload.get("activeSheet")
        if active:
            workbook._require_sheet(active)
            workbook.active_sheet = active
        workbook._selection = payload.get("selection") or f"{workbook.active_sheet}!A1"
        for table in payload.get("tables") or []:
            workbook.add_table(str(table["name"]), str(table["address"]))
        for chart in payload.get("charts") or []:
            workbook._charts.append(
                _Chart(
                    name=str(chart["name"]),
                    sheet=str(chart.get("sheet") or workbook.active_sheet),
                    source=str(chart.get("source", "")),
                    chart_type=str(chart.get("chartType", "ColumnClustered")),
                    title=chart.get("title"),
                )
            )
        for pivot in payload.get("pivots") or []:
            workbook._pivots.append(
                _Pivot(
                    name=str(pivot["name"]),
                    sheet=str(pivot.get("sheet") or workbook.active_sheet),
                    source=str(pivot.get("source", "")),
                    destination=str(pivot.get("destination", "")),
                )
            )
        return workbook

    @classmethod
    def load(cls, path: str | Path) -> "InMemoryWorkbook":
        return cls.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))

    def to_dict(self) -> dict[str, Any]:
        sheets: dict[str, list[list[Any]]] = {}
        for name, sheet in self._sheets.items():
            used = sheet.used_range()
            if used is None:
                sheets[name] = []
                continue
            rows: list[list[Any]] = []
            for row in range(0, used.end_row + 1):
                rows.append(
                    [
                        sheet.cell(row, column).formula or sheet.cell(row, column).value
                        for column in range(0, used.end_column + 1)
                    ]
                )
            sheets[name] = rows
        return {
            "activeSheet": self.active_sheet,
            "selection": self._selection,
            "sheets": sheets,
            "tables": [{"name": table.name, "address": table.range.address} for table in self._tables.values()],
            "charts": [
                {"name": chart.name, "sheet": chart.sheet, "source": chart.source, "chartType": chart.chart_type, "title": chart.title}
                for chart in self._charts
            ],
            "pivots": [
                {"name": pivot.name, "sheet": pivot.sheet, "source": pivot.source, "destination": pivot.destination}
                for pivot in self._pivots
            ],
        }

    def save(self, path: str | Path) -> Path:
        target = Path(path)
        target.write_text(json.dumps(self.to_dict(), indent=2, default=str), encoding="utf-8")
        return target

    def select(self, address: str) -> None:
        self._selection = self._resolve(address).address

    def add_table(self, name: str, address: str) -> None:
        if name in self._tables:
            raise DocumentError(f"Table {name} already exists")
        self._tables[name] = _Table(name=name, range=self._resolve(address))

    @property
    def sheet_names(self) -> list[str]:
        return list(self._sheets)

    def sheet(self, name: str) -> Worksheet:
        return self._require_sheet(name)

    def table_filters(self, name: str) -> dict[str, str]:
        return dict(self._require_table(name).filters)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_context_pack(self, options: ContextOptions) -> ContextPack:
        selection = self._resolve(self._selection)
        clipped = selection.resized(
            min(selection.row_count, options.max_rows), min(selection.column_count, options.max_columns)
        )
        sheets = []
        for sheet in self._sheets.values():
            used = sheet.used_range()
            sheets.append(
                SheetSummary(
                    name=sheet.name,
                    used_rows=used.row_count if used else 0,
                    used_columns=used.column_count if used else 0,
                )
            )
        workbook_map = WorkbookMap(
            sheets=tuple(sheets),
            tables=tuple(f"{table.range.sheet}.{table.name}" for table in self._tables.values())
            if options.include_tables
            else (),
            pivot_tables=tuple(self._qualified_pivots()) if options.include_pivots else (),
            charts=tuple(self._qualified_charts()) if options.include_charts else (),
        )
        return ContextPack(active_sheet=self.active_sheet, selection=self._snapshot(clipped), workbook_map=workbook_map)

    async def read_range(self, address: str) -> RangeSnapshot:
        return self._snapshot(self._resolve(address))

    async def get_used_range(self, sheet: str) -> RangeSnapshot:
        used = self._require_sheet(sheet).used_range()
        if used is None:
            return RangeSnapshot(address=f"{sheet}!A1", values=[[""]], formulas=[[""]], number_formats=[[""]])
        return self._snapshot(used)

    async def get_precedents(self, address: str, depth: int = 1) -> list[str]:
        target = self._resolve(address)
        found: list[str] = []
        frontier = [target]
        for _ in range(max(1, int(depth))):
            next_frontier: list[CellRange] = []
            for area in frontier:
                sheet = self._require_sheet(area.sheet)
                for row, column in area.cells():
                    formula = sheet.cell(row, column).formula
                    for reference in self._references(formula, area.sheet):
                        if reference.address not in found:
                            found.append(reference.address)
                            next_frontier.append(reference)
            frontier = next_frontier
        return found[: max(1, int(depth) * 10)]

    async def get_dependents(self, address: str, depth: int = 1) -> list[str]:
        found: list[str] = []
        frontier = [self._resolve(address)]
        for _ in range(max(1, int(depth))):
            next_frontier: list[CellRange] = []
            for sheet in self._sheets.values():
                for (row, column), cell in sorted(sheet.cells.items()):
                    if not cell.formula:
                        continue
                    references = self._references(cell.formula, sheet.name)
                    if any(reference.intersects(area) for reference in references for area in frontier):
                        dependent = CellRange(sheet.name, row, column, row, column)
                        if dependent.address not in found:
                            found.append(dependent.address)
                            next_frontier.append(dependent)
            frontier = next_frontier
        return found[: max(1, int(depth) * 10)]

    async def find_errors(self, sheet: str | None = None) -> list[dict[str, str]]:
        sheets = [self._require_sheet(sheet)] if sheet else list(self._sheets.values())
        errors: list[dict[str, str]] = []
        for worksheet in sheets:
            for (row, column), cell in sorted(worksheet.cells.items()):
                if isinstance(cell.value, str) and cell.value.startswith("#"):
                    errors.append(
                        {"address": f"{worksheet.name}!{index_to_column(column)}{row + 1}", "value": cell.value}
                    )
        return errors

    async def get_table(self, name: str) -> dict[str, str]:
        table = self._require_table(name)
        return {"name": table.name, "address": table.range.address}

    async def list_pivots(self) -> list[str]:
        return self._qualified_pivots()

    async def list_charts(self) -> list[str]:
        return self._qualified_charts()

    # ------------------------------------------------------------------
    # Writes with change records
    # ------------------------------------------------------------------

    async def write_values(self, address: str, values: Sequence[Sequence[Any]], turn_id: str, reason: str) -> RangeChange:
        target = self._resolve(address)
        self._check_shape(target, values)
        before = self._snapshot(target)
        sheet = self._require_sheet(target.sheet)
        for row_offset, row in enumerate(values):
            for column_offset, value in enumerate(row):
                cell = sheet.ensure_cell(target.start_row + row_offset, target.start_column + column_offset)
                if isinstance(value, str) and value.startswith("="):
                    cell.formula, cell.value = value, None
                else:
                    cell.formula, cell.value = None, value
        return RangeChange(turn_id=turn_id, reason=reason, before=before, after=self._snapshot(target))

    async def write_formulas(
        self, address: str, formulas: Sequence[Sequence[str]], turn_id: str, reason: str
    ) -> RangeChange:
        target = self._resolve(address)
        self._check_shape(target, formulas)
        before = self._snapshot(target)
        sheet = self._require_sheet(target.sheet)
        for row_offset, row in enumerate(formulas):
            for column_offset, formula in enumerate(row):
                cell = sheet.ensure_cell(target.start_row + row_offset, target.start_column + column_offset)
                text = "" if formula is None else str(formula)
                if text.startswith("="):
                    cell.formula, cell.value = text, None
                else:
                    cell.formula, cell.value = None, (text or None)
        return RangeChange(turn_id=turn_id, reason=reason, before=before, after=self._snapshot(target))

    async def apply_snapshot(self, snapshot: RangeSnapshot) -> None:
        """Restore formulas (constants included) and number formats captured in ``snapshot``."""

        target = self._resolve(snapshot.address)
        sheet = self._require_sheet(target.sheet)
        for row_offset, row in enumerate(snapshot.formulas):
            for column_offset, formula in enumerate(row):
                position = (target.start_row + row_offset, target.start_column + column_offset)
                cell = sheet.ensure_cell(*position)
                value = _grid_value(snapshot.values, row_offset, column_offset)
                if isinstance(formula, str) and formula.startswith("="):
                    cell.formula, cell.value = formula, value
                elif formula in (None, "") and value in (None, ""):
                    cell.formula, cell.value = None, value
                else:
                    cell.formula, cell.value = None, value if value not in (None, "") else formula
                number_format = _grid_value(snapshot.number_formats, row_offset, column_offset)
                if number_format:
                    cell.number_format = str(number_format)

    # ------------------------------------------------------------------
    # Other mutations
    # ------------------------------------------------------------------

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
    ) -> RangeChange:
        target = self._resolve(address)
        before = self._snapshot(target)
        sheet = self._require_sheet(target.sheet)
        for row, column in target.cells():
            cell = sheet.ensure_cell(row, column)
            if number_format is not None:
                cell.number_format = number_format
            if bold is not None:
                cell.bold = bold
            if fill_color is not None:
                cell.fill_color = fill_color
            if border_color is not None:
                cell.border_color = border_color
        return RangeChange(turn_id=turn_id, reason=reason, before=before, after=self._snapshot(target))

    async def sort_range(
        self, address: str, key_column: int, turn_id: str, reason: str, ascending: bool = True
    ) -> RangeChange:
        target = self._resolve(address)
        if not 0 <= key_column < target.column_count:
            raise DocumentError(f"Key column {key_column} is outside {target.address}")
        before = self._snapshot(target)
        sheet = self._require_sheet(target.sheet)
        rows = [
            [sheet.cells.pop((row, column), None) for column in range(target.start_column, target.end_column + 1)]
            for row in range(target.start_row, target.end_row + 1)
        ]
        present = [row for row in rows if row[key_column] is not None and not row[key_column].is_empty]
        blank = [row for row in rows if row[key_column] is None or row[key_column].is_empty]
        present.sort(key=lambda row: _sort_key(row[key_column].value), reverse=not ascending)
        for row_offset, row in enumerate(present + blank):
            for column_offset, cell in enumerate(row):
                if cell is not None:
                    sheet.cells[(target.start_row + row_offset, target.start_column + column_offset)] = cell
        return RangeChange(turn_id=turn_id, reason=reason, before=before, after=self._snapshot(target))

    async def filter_table(self, table_name: str, column_name: str, criteria: str) -> None:
        table = self._require_table(table_name)
        sheet = self._require_sheet(table.range.sheet)
        headers = [
            sheet.cell(table.range.start_row, column).value
            for column in range(table.range.start_column, table.range.end_column + 1)
        ]
        if column_name not in headers:
            raise DocumentError(f"Column {column_name} not found in table {table_name}")
        table.filters[column_name] = criteria

    async def add_sheet(self, name: str) -> None:
        name = name.strip()
        if not name:
            raise DocumentError("Sheet name is empty")
        if name in self._sheets:
            raise DocumentError(f"Sheet {name} already exists")
        self._sheets[name] = Worksheet(name)

    async def rename_sheet(self, current_name: str, new_name: str) -> None:
        sheet = self._require_sheet(current_name)
        if new_name in self._sheets:
            raise DocumentError(f"Sheet {new_name} already exists")
        self._sheets = {(new_name if key == current_name else key): value for key, value in self._sheets.items()}
        sheet.name = new_name
        for table in self._tables.values():
            if table.range.sheet == current_name:
                old = table.range
                table.range = CellRange(new_name, old.start_row, old.start_column, old.end_row, old.end_column)
        for item in [*self._charts, *self._pivots]:
            if item.sheet == current_name:
                item.sheet = new_name
        if self.active_sheet == current_name:
            self.active_sheet = new_name
        selection_sheet, selection_range = split_address(self._selection)
        if selection_sheet == current_name:
            self._selection = f"{new_name}!{selection_range}"

    async def add_conditional_format(
        self,
        address: str,
        *,
        formula1: str | None = None,
        operator: str | None = None,
        fill_color: str | None = None,
    ) -> None:
        target = self._resolve(address)
        self._require_sheet(target.sheet).conditional_formats.append(
            {
                "address": target.address,
                "ruleType": "cellValue",
                "formula1": formula1,
                "operator": operator,
                "fillColor": fill_color,
            }
        )

    async def clear_conditional_formats(self, address: str) -> None:
        target = self._resolve(address)
        sheet = self._require_sheet(target.sheet)
        sheet.conditional_formats = [
            rule
            for rule in sheet.conditional_formats
            if not parse_range(rule["address"], default_sheet=sheet.name).intersects(target)
        ]

    async def set_data_validation_dropdown(self, address: str, values: Sequence[str]) -> None:
        target = self._resolve(address)
        self._require_sheet(target.sheet).validations[target.a1] = [str(value) for value in values]

    async def create_chart(
        self,
        source_address: str,
        chart_type: str,
        *,
        target_sheet: str | None = None,
        title: str | None = None,
    ) -> str:
        source = self._resolve(source_address)
        sheet_name = target_sheet or source.sheet
        self._require_sheet(sheet_name)
        name = f"Chart{len(self._charts) + 1}"
        self._charts.append(_Chart(name=name, sheet=sheet_name, source=source.address, chart_type=chart_type, title=title))
        return f"{sheet_name}.{name}"

    async def update_chart(
        self,
        chart_name: str,
        sheet_name: str,
        *,
        title: str | None = None,
        legend_visible: bool | None = None,
    ) -> None:
        chart = next((c for c in self._charts if c.name == chart_name and c.sheet == sheet_name), None)
        if chart is None:
            raise DocumentError(f"Chart {sheet_name}.{chart_name} not found")
        if title is not None:
            chart.title = title
        if legend_visible is not None:
            chart.legend_visible = legend_visible

    async def create_pivot(self, source_address: str, destination_address: str, name: str) -> None:
        source = self._resolve(source_address)
        destination = self._resolve(destination_address)
        if any(p.name == name and p.sheet == destination.sheet for p in self._pivots):
            raise DocumentError(f"Pivot {destination.sheet}.{name} already exists")
        self._pivots.append(
            _Pivot(name=name, sheet=destination.sheet, source=source.address, destination=destination.address)
        )

    async def update_pivot_filters(
        self, sheet_name: str, pivot_name: str, field_name: str, visible_items: Sequence[str]
    ) -> None:
        pivot = next((p for p in self._pivots if p.name == pivot_name and p.sheet == sheet_name), None)
        if pivot is None:
            raise DocumentError(f"Pivot {sheet_name}.{pivot_name} not found")
        pivot.filters[field_name] = [str(item) for item in visible_items]

    async def add_comment(self, address: str, text: str) -> None:
        target = self._resolve(address)
        self._require_sheet(target.sheet).comments[target.a1] = text

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve(self, address: str) -> CellRange:
        target = parse_range(address, default_sheet=self.active_sheet)
        self._require_sheet(target.sheet)
        return target

    def _require_sheet(self, name: str) -> Worksheet:
        sheet = self._sheets.get(name)
        if sheet is None:
            raise DocumentError(f"Sheet {name} not found")
        return sheet

    def _require_table(self, name: str) -> _Table:
        table = self._tables.get(name)
        if table is None:
            raise DocumentError(f"Table {name} not found")
        return table

    def _snapshot(self, target: CellRange) -> RangeSnapshot:
        sheet = self._require_sheet(target.sheet)
        values: list[list[Any]] = []
        formulas: list[list[str]] = []
        formats: list[list[str]] = []
        for row in range(target.start_row, target.end_row + 1):
            cells = [sheet.cell(row, column) for column in range(target.start_column, target.end_column + 1)]
            values.append(["" if cell.value is None and not cell.formula else cell.value for cell in cells])
            formulas.append([cell.formula_text() for cell in cells])
            formats.append([cell.number_format for cell in cells])
        return RangeSnapshot(address=target.address, values=values, formulas=formulas, number_formats=formats)

    def _references(self, formula: str | None, sheet_name: str) -> list[CellRange]:
        if not formula:
            return []
        references = []
        for match in REFERENCE_PATTERN.finditer(formula):
            sheet = (match.group("sheet") or sheet_name).strip("'")
            if sheet not in self._sheets:
                LOGGER.debug("Skipping reference to unknown sheet %s in %s", sheet, formula)
                continue
            references.append(parse_range(match.group("range"), default_sheet=sheet))
        return references

    def _qualified_charts(self) -> list[str]:
        return [f"{chart.sheet}.{chart.name}" for chart in self._charts]

    def _qualified_pivots(self) -> list[str]:
        return [f"{pivot.sheet}.{pivot.name}" for pivot in self._pivots]

    @staticmethod
    def _check_shape(target: CellRange, grid: Sequence[Sequence[Any]]) -> None:
        rows = len(grid)
        columns = {len(row) for row in grid}
        if rows != target.row_count or columns != {target.column_count}:
            raise DocumentError(
                f"Expected a {target.row_count}x{target.column_count} grid for {target.address}"
            )


def _grid_value(grid: Sequence[Sequence[Any]], row: int, column: int) -> Any:
    if row >= len(grid) or column >= len(grid[row]):
        return None
    return grid[row][column]


def _sort_key(value: Any) -> tuple[int, Any]:
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (0, value)
    return (2, str(value).lower())
