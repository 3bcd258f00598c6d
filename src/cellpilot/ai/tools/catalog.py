"""The fixed catalog of spreadsheet tools."""

from __future__ import annotations

from typing import Any, Mapping

from .registry import ToolRegistry
from .types import ToolCategory, ToolSpec

__all__ = [
    "TOOL_SPECS",
    "TOOL_NAMES",
    "EDITING_TOOLS",
    "WEB_SEARCH_TOOL",
    "build_default_registry",
    "is_editing_tool",
    "is_risky_tool",
]

WEB_SEARCH_TOOL = "web_search"

_STRING: Mapping[str, Any] = {"type": "string"}
_BOOLEAN: Mapping[str, Any] = {"type": "boolean"}
_STRING_LIST: Mapping[str, Any] = {"type": "array", "items": {"type": "string"}}
_DEPTH: Mapping[str, Any] = {"type": "number", "minimum": 1, "maximum": 5}


def _object(required: tuple[str, ...] = (), **properties: Mapping[str, Any]) -> dict[str, Any]:
    schema: dict[str, Any] = {
        "type": "object",
        "properties": {name: dict(value) for name, value in properties.items()},
        "additionalProperties": False,
    }
    if required:
        schema["required"] = list(required)
    return schema


def _read(name: str, description: str, parameters: dict[str, Any]) -> ToolSpec:
    return ToolSpec(name=name, description=description, parameters=parameters, category=ToolCategory.READ)


def _edit(name: str, description: str, parameters: dict[str, Any]) -> ToolSpec:
    return ToolSpec(name=name, description=description, parameters=parameters, category=ToolCategory.EDIT)


TOOL_SPECS: tuple[ToolSpec, ...] = (
    # Reads
    _read("read_range", "Read values, formulas, and number formats from a range.", _object(("address",), address=_STRING)),
    _read("getRange", "Alias for read_range. Reads a specific range.", _object(("address",), address=_STRING)),
    _read("getUsedRange", "Read used range of a given sheet.", _object(("sheet",), sheet=_STRING)),
    _read(
        "getPrecedents",
        "List precedent ranges for a cell/range.",
        _object(("address",), address=_STRING, depth=_DEPTH),
    ),
    _read(
        "getDependents",
        "List dependent ranges for a cell/range.",
        _object(("address",), address=_STRING, depth=_DEPTH),
    ),
    _read("findErrors", "Find workbook or sheet formula/value errors.", _object(sheet=_STRING)),
    _read("getTable", "Get table details by table name.", _object(("name",), name=_STRING)),
    _read("listPivots", "List pivot tables in the workbook.", _object()),
    _read("listCharts", "List charts in the workbook.", _object()),
    # Edits
    _edit(
        "write_values",
        "Write cell values to a range.",
        _object(
            ("address", "values"),
            address=_STRING,
            values={"type": "array", "items": {"type": "array", "items": {}}},
            reason=_STRING,
        ),
    ),
    _edit(
        "write_formulas",
        "Write formulas to a range.",
        _object(
            ("address", "formulas"),
            address=_STRING,
            formulas={"type": "array", "items": {"type": "array", "items": {"type": "string"}}},
            reason=_STRING,
        ),
    ),
    _edit(
        "format_range",
        "Format a range (number format, bold, fill, borders).",
        _object(
            ("address",),
            address=_STRING,
            numberFormat=_STRING,
            bold=_BOOLEAN,
            fillColor=_STRING,
            borderColor=_STRING,
        ),
    ),
    _edit(
        "sort_range",
        "Sort a range using a 0-based key column index.",
        _object(
            ("address", "keyColumn"),
            address=_STRING,
            keyColumn={"type": "number", "minimum": 0},
            ascending=_BOOLEAN,
        ),
    ),
    _edit(
        "filter_table",
        "Apply a filter to a table column.",
        _object(("tableName", "columnName", "criteria"), tableName=_STRING, columnName=_STRING, criteria=_STRING),
    ),
    _edit("add_sheet", "Add a worksheet.", _object(("name",), name=_STRING)),
    _edit("rename_sheet", "Rename a worksheet.", _object(("currentName", "newName"), currentName=_STRING, newName=_STRING)),
    _edit(
        "add_conditional_format",
        "Add conditional format to range.",
        _object(("address",), address=_STRING, formula1=_STRING, operator=_STRING, fillColor=_STRING),
    ),
    _edit("clear_conditional_formats", "Clear conditional formats in range.", _object(("address",), address=_STRING)),
    _edit(
        "set_data_validation_dropdown",
        "Set data validation dropdown list for range.",
        _object(("address", "values"), address=_STRING, values=_STRING_LIST),
    ),
    _edit(
        "create_chart",
        "Create chart from source range.",
        _object(
            ("sourceAddress", "chartType"),
            sourceAddress=_STRING,
            chartType=_STRING,
            targetSheet=_STRING,
            title=_STRING,
        ),
    ),
    _edit(
        "update_chart",
        "Update chart metadata (title, legend).",
        _object(
            ("chartName", "sheetName"),
            chartName=_STRING,
            sheetName=_STRING,
            title=_STRING,
            setLegendVisible=_BOOLEAN,
        ),
    ),
    _edit(
        "create_pivot",
        "Create a pivot table.",
        _object(
            ("sourceAddress", "destinationAddress", "name"),
            sourceAddress=_STRING,
            destinationAddress=_STRING,
            name=_STRING,
        ),
    ),
    _edit(
        "update_pivot_filters",
        "Update pivot filter selected items.",
        _object(
            ("sheetName", "pivotName", "fieldName", "visibleItems"),
            sheetName=_STRING,
            pivotName=_STRING,
            fieldName=_STRING,
            visibleItems=_STRING_LIST,
        ),
    ),
    _edit(
        "add_comment_or_note",
        "Add a plain text comment to a range.",
        _object(("address", "text"), address=_STRING, text=_STRING),
    ),
    # External
    ToolSpec(
        name=WEB_SEARCH_TOOL,
        description="Run external web search when enabled by user.",
        parameters=_object(("query",), query=_STRING, maxResults={"type": "number", "minimum": 1, "maximum": 10}),
        category=ToolCategory.EXTERNAL,
    ),
)

TOOL_NAMES: frozenset[str] = frozenset(spec.name for spec in TOOL_SPECS)
EDITING_TOOLS: frozenset[str] = frozenset(spec.name for spec in TOOL_SPECS if spec.is_write)


def is_editing_tool(name: str) -> bool:
    return name in EDITING_TOOLS


def is_risky_tool(name: str) -> bool:
    return name == WEB_SEARCH_TOOL or is_editing_tool(name)


def build_default_registry() -> ToolRegistry:
    return ToolRegistry(TOOL_SPECS)
