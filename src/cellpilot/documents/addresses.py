"""A1-style address parsing for worksheet ranges."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator

from .types import DocumentError

__all__ = [
    "CellRange",
    "column_to_index",
    "index_to_column",
    "split_address",
    "parse_range",
    "REFERENCE_PATTERN",
]

_CELL_PATTERN = re.compile(r"^\$?([A-Za-z]{1,3})\$?(\d+)$")
_QUOTED_SHEET = re.compile(r"^'(.+)'!(.+)$")
_SIMPLE_SHEET = re.compile(r"^([^!]+)!(.+)$")

# Cell or range reference inside a formula, optionally sheet-qualified.
REFERENCE_PATTERN = re.compile(
    r"(?:(?P<sheet>'[^']+'|[A-Za-z_][\w.]*)!)?"
    r"(?P<range>\$?[A-Z]{1,3}\$?\d+(?::\$?[A-Z]{1,3}\$?\d+)?)"
)


def column_to_index(label: str) -> int:
    """Convert ``"A"`` -> 0, ``"AA"`` -> 26."""

    index = 0
    for char in label.upper():
        if not "A" <= char <= "Z":
            raise DocumentError(f"Invalid column label: {label}")
        index = index * 26 + (ord(char) - ord("A") + 1)
    return index - 1


def index_to_column(index: int) -> str:
    """Convert 0 -> ``"A"``, 26 -> ``"AA"``."""

    if index < 0:
        raise DocumentError(f"Invalid column index: {index}")
    label = ""
    number = index + 1
    while number:
        number, remainder = divmod(number - 1, 26)
        label = chr(ord("A") + remainder) + label
    return label


def split_address(address: str) -> tuple[str | None, str]:
    """Split ``"'My Sheet'!A1:B2"`` into ``("My Sheet", "A1:B2")``; unqualified ranges get ``None``."""

    trimmed = (address or "").strip()
    quoted = _QUOTED_SHEET.match(trimmed)
    if quoted:
        return quoted.group(1), quoted.group(2)
    simple = _SIMPLE_SHEET.match(trimmed)
    if simple:
        return simple.group(1), simple.group(2)
    return None, trimmed


def _parse_cell(text: str) -> tuple[int, int]:
    match = _CELL_PATTERN.match(text.strip())
    if not match:
        raise DocumentError(f"Invalid cell reference: {text}")
    row = int(match.group(2)) - 1
    if row < 0:
        raise DocumentError(f"Invalid cell reference: {text}")
    return row, column_to_index(match.group(1))


@dataclass(slots=True, frozen=True)
class CellRange:
    """Zero-based, inclusive rectangle on a single sheet."""

    sheet: str
    start_row: int
    start_column: int
    end_row: int
    end_column: int

    def __post_init__(self) -> None:
        if self.end_row < self.start_row:
            start, end = self.end_row, self.start_row
            object.__setattr__(self, "start_row", start)
            object.__setattr__(self, "end_row", end)
        if self.end_column < self.start_column:
            start, end = self.end_column, self.start_column
            object.__setattr__(self, "start_column", start)
            object.__setattr__(self, "end_column", end)

    @property
    def row_count(self) -> int:
        return self.end_row - self.start_row + 1

    @property
    def column_count(self) -> int:
        return self.end_column - self.start_column + 1

    @property
    def a1(self) -> str:
        start = f"{index_to_column(self.start_column)}{self.start_row + 1}"
        if self.row_count == 1 and self.column_count == 1:
            return start
        return f"{start}:{index_to_column(self.end_column)}{self.end_row + 1}"

    @property
    def address(self) -> str:
        return f"{self.sheet}!{self.a1}"

    def contains(self, row: int, column: int) -> bool:
        return self.start_row <= row <= self.end_row and self.start_column <= column <= self.end_column

    def intersects(self, other: "CellRange") -> bool:
        return (
            self.sheet == other.sheet
            and self.start_row <= other.end_row
            and other.start_row <= self.end_row
            and self.start_column <= other.end_column
            and other.start_column <= self.end_column
        )

    def resized(self, rows: int, columns: int) -> "CellRange":
        """Return a range anchored at the same top-left cell with the given size."""

        return CellRange(
            self.sheet,
            self.start_row,
            self.start_column,
            self.start_row + max(1, rows) - 1,
            self.start_column + max(1, columns) - 1,
        )

    def cells(self) -> Iterator[tuple[int, int]]:
        for row in range(self.start_row, self.end_row + 1):
            for column in range(self.start_column, self.end_column + 1):
                yield row, column


def parse_range(address: str, *, default_sheet: str) -> CellRange:
    """Parse ``address`` into a :class:`CellRange`, using ``default_sheet`` when unqualified."""

    sheet, range_part = split_address(address)
    if not range_part:
        raise DocumentError("Range address is empty")
    start_text, _, end_text = range_part.partition(":")
    start_row, start_column = _parse_cell(start_text)
    end_row, end_column = _parse_cell(end_text) if end_text else (start_row, start_column)
    return CellRange(sheet or default_sheet, start_row, start_column, end_row, end_column)
