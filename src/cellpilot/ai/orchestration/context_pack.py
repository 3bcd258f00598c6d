"""Workbook context packs at decreasing levels of detail."""

from __future__ import annotations

import json
from dataclasses import replace
from typing import Literal

from ...documents.types import ContextOptions, ContextPack, DocumentDriver, WorkbookMap

__all__ = [
    "ContextLevel",
    "CONTEXT_LEVELS",
    "LEVEL_OPTIONS",
    "build_workbook_context",
    "compact_workbook_context",
    "serialize_workbook_context",
]

ContextLevel = Literal["full", "selection_only", "minimal"]
CONTEXT_LEVELS: tuple[ContextLevel, ...] = ("full", "selection_only", "minimal")

LEVEL_OPTIONS: dict[str, ContextOptions] = {
    "full": ContextOptions(include_tables=True, include_charts=True, include_pivots=True, max_rows=20, max_columns=20),
    "selection_only": ContextOptions(
        include_tables=True, include_charts=False, include_pivots=False, max_rows=12, max_columns=12
    ),
    "minimal": ContextOptions(include_tables=False, include_charts=False, include_pivots=False, max_rows=8, max_columns=8),
}


async def build_workbook_context(driver: DocumentDriver, level: ContextLevel) -> ContextPack:
    pack = await driver.get_context_pack(LEVEL_OPTIONS[level])
    return compact_workbook_context(pack, level)


def compact_workbook_context(pack: ContextPack, level: ContextLevel) -> ContextPack:
    """Drop workbook-map metadata a level does not carry, whatever the driver returned."""

    if level == "full":
        return pack
    workbook_map = pack.workbook_map
    if level == "selection_only":
        trimmed = replace(workbook_map, charts=(), pivot_tables=())
    else:
        trimmed = WorkbookMap(sheets=workbook_map.sheets, tables=(), pivot_tables=(), charts=())
    return replace(pack, workbook_map=trimmed)


def serialize_workbook_context(pack: ContextPack) -> str:
    return json.dumps(pack.to_dict(), ensure_ascii=False, separators=(",", ":"), default=str)
