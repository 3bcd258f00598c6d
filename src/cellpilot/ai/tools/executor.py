"""Dispatch validated tool calls onto the document driver."""

from __future__ import annotations

import inspect
import json
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Sequence

import httpx

from ...documents.types import DocumentDriver, RangeChange
from ..types import ToolCall
from .catalog import WEB_SEARCH_TOOL
from .types import ToolExecutionResult

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ...services.settings import Settings

LOGGER = logging.getLogger(__name__)

__all__ = ["MAX_ERROR_CHARS", "SearchResult", "WebSearchFn", "ToolExecutor", "truncate_text"]

MAX_ERROR_CHARS = 5000

SearchResult = dict[str, str]
WebSearchFn = Callable[[str, int], Awaitable[Sequence[Mapping[str, Any]]]]

_Handler = Callable[[ToolCall, str], Awaitable[ToolExecutionResult]]


def truncate_text(value: Any, max_chars: int = MAX_ERROR_CHARS) -> str:
    serialized = value if isinstance(value, str) else json.dumps(value, default=str)
    if len(serialized) <= max_chars:
        return serialized
    return f"{serialized[:max_chars]}..."


def _optional_str(args: Mapping[str, Any], key: str) -> str | None:
    value = args.get(key)
    return value if isinstance(value, str) else None


def _optional_bool(args: Mapping[str, Any], key: str) -> bool | None:
    value = args.get(key)
    return value if isinstance(value, bool) else None


class ToolExecutor:
    """Runs one tool call at a time and converts every failure into an ``error`` result."""

    def __init__(
        self,
        driver: DocumentDriver,
        settings: "Settings",
        *,
        web_search: WebSearchFn | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._driver = driver
        self._settings = settings
        self._web_search = web_search
        self._http_client = http_client
        self._handlers: dict[str, _Handler] = {
            "read_range": self._read_range,
            "getRange": self._read_range,
            "getUsedRange": self._get_used_range,
            "getPrecedents": self._get_precedents,
            "getDependents": self._get_dependents,
            "findErrors": self._find_errors,
            "getTable": self._get_table,
            "listPivots": self._list_pivots,
            "listCharts": self._list_charts,
            "write_values": self._write_values,
            "write_formulas": self._write_formulas,
            "format_range": self._format_range,
            "sort_range": self._sort_range,
            "filter_table": self._filter_table,
            "add_sheet": self._add_sheet,
            "rename_sheet": self._rename_sheet,
            "add_conditional_format": self._add_conditional_format,
            "clear_conditional_formats": self._clear_conditional_formats,
            "set_data_validation_dropdown": self._set_data_validation_dropdown,
            "create_chart": self._create_chart,
            "update_chart": self._update_chart,
            "create_pivot": self._create_pivot,
            "update_pivot_filters": self._update_pivot_filters,
            "add_comment_or_note": self._add_comment,
            WEB_SEARCH_TOOL: self._run_web_search,
        }

    @property
    def settings(self) -> "Settings":
        return self._settings

    @settings.setter
    def settings(self, value: "Settings") -> None:
        self._settings = value

    async def execute(
        self,
        call: ToolCall,
        *,
        turn_id: str,
        web_search: WebSearchFn | None = None,
    ) -> ToolExecutionResult:
        handler = self._handlers.get(call.name)
        if handler is None:
            return ToolExecutionResult(
                status="error",
                summary=f"Unsupported tool: {call.name}",
                error=f"Unknown tool {call.name}",
            )
        try:
            if call.name == WEB_SEARCH_TOOL:
                return await self._run_web_search(call, turn_id, override=web_search)
            return await handler(call, turn_id)
        except Exception as exc:
            LOGGER.warning("Tool %s failed: %s", call.name, exc)
            LOGGER.debug("Tool failure details", exc_info=True)
            return ToolExecutionResult(
                status="error",
                summary=f"Tool {call.name} failed",
                error=truncate_text(str(exc)),
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _read_range(self, call: ToolCall, turn_id: str) -> ToolExecutionResult:
        snapshot = await self._driver.read_range(str(call.args.get("address", "")))
        return ToolExecutionResult(
            status="success",
            summary=f"Read {snapshot.address}",
            data=snapshot.to_dict(),
            cited_ranges=[snapshot.address],
        )

    async def _get_used_range(self, call: ToolCall, turn_id: str) -> ToolExecutionResult:
        sheet = str(call.args.get("sheet", ""))
        snapshot = await self._driver.get_used_range(sheet)
        return ToolExecutionResult(
            status="success",
            summary=f"Read used range on {sheet}",
            data=snapshot.to_dict(),
            cited_ranges=[snapshot.address],
        )

    async def _get_precedents(self, call: ToolCall, turn_id: str) -> ToolExecutionResult:
        depth = int(call.args.get("depth", 1))
        precedents = await self._driver.get_precedents(str(call.args.get("address", "")), depth)
        return ToolExecutionResult(
            status="success",
            summary=f"Found {len(precedents)} precedent range(s).",
            data=precedents,
            cited_ranges=list(precedents),
        )

    async def _get_dependents(self, call: ToolCall, turn_id: str) -> ToolExecutionResult:
        depth = int(call.args.get("depth", 1))
        dependents = await self._driver.get_dependents(str(call.args.get("address", "")), depth)
        return ToolExecutionResult(
            status="success",
            summary=f"Found {len(dependents)} dependent range(s).",
            data=dependents,
            cited_ranges=list(dependents),
        )

    async def _find_errors(self, call: ToolCall, turn_id: str) -> ToolExecutionResult:
        sheet = call.args.get("sheet")
        errors = await self._driver.find_errors(str(sheet) if sheet else None)
        return ToolExecutionResult(
            status="success",
            summary=f"Found {len(errors)} error cell(s).",
            data=errors,
            cited_ranges=[error["address"] for error in errors],
        )

    async def _get_table(self, call: ToolCall, turn_id: str) -> ToolExecutionResult:
        table = await self._driver.get_table(str(call.args.get("name", "")))
        return ToolExecutionResult(
            status="success",
            summary=f"Read table {table['name']}",
            data=table,
            cited_ranges=[table["address"]],
        )

    async def _list_pivots(self, call: ToolCall, turn_id: str) -> ToolExecutionResult:
        pivots = await self._driver.list_pivots()
        return ToolExecutionResult(status="success", summary=f"Found {len(pivots)} pivot table(s).", data=pivots)

    async def _list_charts(self, call: ToolCall, turn_id: str) -> ToolExecutionResult:
        charts = await self._driver.list_charts()
        return ToolExecutionResult(status="success", summary=f"Found {len(charts)} chart(s).", data=charts)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _write_values(self, call: ToolCall, turn_id: str) -> ToolExecutionResult:
        reason = str(call.args.get("reason") or call.reason or "Updated by AI agent")
        change = await self._driver.write_values(
            str(call.args.get("address", "")), call.args.get("values") or [], turn_id, reason
        )
        return _changed(f"Updated values in {change.address}", change)

    async def _write_formulas(self, call: ToolCall, turn_id: str) -> ToolExecutionResult:
        reason = str(call.args.get("reason") or call.reason or "Updated formulas by AI agent")
        change = await self._driver.write_formulas(
            str(call.args.get("address", "")), call.args.get("formulas") or [], turn_id, reason
        )
        return _changed(f"Updated formulas in {change.address}", change)

    async def _format_range(self, call: ToolCall, turn_id: str) -> ToolExecutionResult:
        change = await self._driver.format_range(
            str(call.args.get("address", "")),
            turn_id,
            call.reason or "Formatted by AI agent",
            number_format=_optional_str(call.args, "numberFormat"),
            bold=_optional_bool(call.args, "bold"),
            fill_color=_optional_str(call.args, "fillColor"),
            border_color=_optional_str(call.args, "borderColor"),
        )
        return _changed(f"Formatted {change.address}", change)

    async def _sort_range(self, call: ToolCall, turn_id: str) -> ToolExecutionResult:
        change = await self._driver.sort_range(
            str(call.args.get("address", "")),
            int(call.args.get("keyColumn", 0)),
            turn_id,
            call.reason or "Sorted by AI agent",
            ascending=call.args.get("ascending") is not False,
        )
        return _changed(f"Sorted {change.address}", change)

    async def _filter_table(self, call: ToolCall, turn_id: str) -> ToolExecutionResult:
        table_name = str(call.args.get("tableName", ""))
        column_name = str(call.args.get("columnName", ""))
        await self._driver.filter_table(table_name, column_name, str(call.args.get("criteria", "")))
        return ToolExecutionResult(status="success", summary=f"Filtered {table_name}.{column_name}")

    async def _add_sheet(self, call: ToolCall, turn_id: str) -> ToolExecutionResult:
        name = str(call.args.get("name", ""))
        await self._driver.add_sheet(name)
        return ToolExecutionResult(status="success", summary=f"Added sheet {name}")

    async def _rename_sheet(self, call: ToolCall, turn_id: str) -> ToolExecutionResult:
        current_name = str(call.args.get("currentName", ""))
        new_name = str(call.args.get("newName", ""))
        await self._driver.rename_sheet(current_name, new_name)
        return ToolExecutionResult(status="success", summary=f"Renamed {current_name} to {new_name}")

    async def _add_conditional_format(self, call: ToolCall, turn_id: str) -> ToolExecutionResult:
        address = str(call.args.get("address", ""))
        await self._driver.add_conditional_format(
            address,
            formula1=_optional_str(call.args, "formula1"),
            operator=_optional_str(call.args, "operator"),
            fill_color=_optional_str(call.args, "fillColor"),
        )
        return _cited(f"Added conditional format to {address}", address)

    async def _clear_conditional_formats(self, call: ToolCall, turn_id: str) -> ToolExecutionResult:
        address = str(call.args.get("address", ""))
        await self._driver.clear_conditional_formats(address)
        return _cited(f"Cleared conditional formats in {address}", address)

    async def _set_data_validation_dropdown(self, call: ToolCall, turn_id: str) -> ToolExecutionResult:
        address = str(call.args.get("address", ""))
        values = [str(item) for item in call.args.get("values") or []]
        await self._driver.set_data_validation_dropdown(address, values)
        return _cited(f"Set dropdown validation for {address}", address)

    async def _create_chart(self, call: ToolCall, turn_id: str) -> ToolExecutionResult:
        source_address = str(call.args.get("sourceAddress", ""))
        chart_ref = await self._driver.create_chart(
            source_address,
            str(call.args.get("chartType") or "ColumnClustered"),
            target_sheet=_optional_str(call.args, "targetSheet"),
            title=_optional_str(call.args, "title"),
        )
        return _cited(f"Created chart {chart_ref}", source_address)

    async def _update_chart(self, call: ToolCall, turn_id: str) -> ToolExecutionResult:
        chart_name = str(call.args.get("chartName", ""))
        sheet_name = str(call.args.get("sheetName", ""))
        await self._driver.update_chart(
            chart_name,
            sheet_name,
            title=_optional_str(call.args, "title"),
            legend_visible=_optional_bool(call.args, "setLegendVisible"),
        )
        return ToolExecutionResult(status="success", summary=f"Updated chart {sheet_name}.{chart_name}")

    async def _create_pivot(self, call: ToolCall, turn_id: str) -> ToolExecutionResult:
        source_address = str(call.args.get("sourceAddress", ""))
        destination_address = str(call.args.get("destinationAddress", ""))
        name = str(call.args.get("name", ""))
        await self._driver.create_pivot(source_address, destination_address, name)
        return ToolExecutionResult(
            status="success",
            summary=f"Created pivot {name}",
            cited_ranges=[source_address, destination_address],
        )

    async def _update_pivot_filters(self, call: ToolCall, turn_id: str) -> ToolExecutionResult:
        sheet_name = str(call.args.get("sheetName", ""))
        pivot_name = str(call.args.get("pivotName", ""))
        visible_items = [str(item) for item in call.args.get("visibleItems") or []]
        await self._driver.update_pivot_filters(sheet_name, pivot_name, str(call.args.get("fieldName", "")), visible_items)
        return ToolExecutionResult(status="success", summary=f"Updated pivot filters for {sheet_name}.{pivot_name}")

    async def _add_comment(self, call: ToolCall, turn_id: str) -> ToolExecutionResult:
        address = str(call.args.get("address", ""))
        await self._driver.add_comment(address, str(call.args.get("text", "")))
        return _cited(f"Added note/comment to {address}", address)

    # ------------------------------------------------------------------
    # Web search
    # ------------------------------------------------------------------

    async def _run_web_search(
        self,
        call: ToolCall,
        turn_id: str,
        *,
        override: WebSearchFn | None = None,
    ) -> ToolExecutionResult:
        if not self._settings.web_search_enabled:
            return ToolExecutionResult(
                status="error",
                summary="Web search is disabled in Settings.",
                error="Web search is disabled.",
            )
        query = str(call.args.get("query", ""))
        max_results = int(call.args.get("maxResults", 5))
        search = override or self._web_search
        if search is not None:
            raw = search(query, max_results)
            raw_results = await raw if inspect.isawaitable(raw) else raw
        else:
            raw_results = await self._search_endpoint(query, max_results)
        results = _normalize_results(raw_results)
        sources = "\n".join(f"- {result['title']}: {result['url']}" for result in results)
        return ToolExecutionResult(
            status="success",
            summary=f"Found {len(results)} web result(s).",
            data={"results": results, "sources": sources},
        )

    async def _search_endpoint(self, query: str, max_results: int) -> list[Mapping[str, Any]]:
        endpoint = (self._settings.search_endpoint or "").strip()
        if not endpoint:
            raise RuntimeError("Web search endpoint is not configured.")
        params = {"q": query, "limit": str(max_results)}
        if self._http_client is not None:
            response = await self._http_client.get(endpoint, params=params)
        else:
            async with httpx.AsyncClient(timeout=self._settings.request_timeout) as client:
                response = await client.get(endpoint, params=params)
        if not response.is_success:
            raise RuntimeError(f"Search request failed ({response.status_code}): {response.text[:300]}")
        payload = response.json()
        return list(payload.get("results") or []) if isinstance(payload, dict) else []


def _changed(summary: str, change: RangeChange) -> ToolExecutionResult:
    return ToolExecutionResult(
        status="success",
        summary=summary,
        data={"changedCellCount": change.changed_cell_count},
        edited_ranges=[change.address],
        cited_ranges=[change.address],
        changes=[change],
    )


def _cited(summary: str, address: str) -> ToolExecutionResult:
    # Mutations without a before-snapshot are cited but never reported as edited ranges.
    return ToolExecutionResult(status="success", summary=summary, cited_ranges=[address])


def _normalize_results(raw_results: Sequence[Mapping[str, Any]] | None) -> list[SearchResult]:
    results: list[SearchResult] = []
    for index, item in enumerate(raw_results or []):
        results.append(
            {
                "title": str(item.get("title") or f"Result {index + 1}"),
                "url": str(item.get("url") or ""),
                "snippet": str(item.get("snippet") or ""),
            }
        )
    return results
