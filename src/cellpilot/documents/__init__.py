"""Spreadsheet document contract and the in-memory workbook driver."""

from .types import (
    ContextOptions,
    ContextPack,
    DocumentDriver,
    DocumentError,
    RangeChange,
    RangeSnapshot,
    SheetSummary,
    WorkbookMap,
    WriteRisk,
    count_changed_cells,
)
from .workbook import InMemoryWorkbook

__all__ = [
    "ContextOptions",
    "ContextPack",
    "DocumentDriver",
    "DocumentError",
    "InMemoryWorkbook",
    "RangeChange",
    "RangeSnapshot",
    "SheetSummary",
    "WorkbookMap",
    "WriteRisk",
    "count_changed_cells",
]
