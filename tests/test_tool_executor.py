from __future__ import annotations

from dataclasses import replace

import httpx
import pytest

from cellpilot.ai.tools.executor import MAX_ERROR_CHARS, ToolExecutor, truncate_text
from cellpilot.ai.types import ToolCall


@pytest.mark.asyncio
async def test_write_values_returns_change_record(workbook, settings) -> None:
    executor = ToolExecutor(workbook, settings)
    call = ToolCall(name="write_values", args={"address": "Sheet1!B2:B3", "values": [[11], [5]]}, reason="fix")

    result = await executor.execute(call, turn_id="turn-1")

    assert result.ok
    assert result.summary == "Updated values in Sheet1!B2:B3"
    assert result.data == {"changedCellCount": 1}
    assert list(result.edited_ranges) == ["Sheet1!B2:B3"]
    change = result.changes[0]
    assert change.turn_id == "turn-1"
    assert change.reason == "fix"
    assert change.before.values == ((10,), (5,))
    assert change.after.values == ((11,), (5,))


@pytest.mark.asyncio
async def test_read_range_cites_the_range(workbook, settings) -> None:
    result = await ToolExecutor(workbook, settings).execute(
        ToolCall(name="getRange", args={"address": "Sheet1!A2:C2"}), turn_id="t"
    )

    assert result.ok
    assert list(result.cited_ranges) == ["Sheet1!A2:C2"]
    assert result.data["values"] == [["North", 10, 20]]
    assert not result.edited_ranges


@pytest.mark.asyncio
async def test_reads_cover_tables_and_dependents(workbook, settings) -> None:
    executor = ToolExecutor(workbook, settings)

    table = await executor.execute(ToolCall(name="getTable", args={"name": "Sales"}), turn_id="t")
    dependents = await executor.execute(ToolCall(name="getDependents", args={"address": "Sheet1!B2"}), turn_id="t")

    assert table.data == {"name": "Sales", "address": "Sheet1!A1:C3"}
    assert dependents.summary == "Found 1 dependent range(s)."
    assert list(dependents.cited_ranges) == ["Sheet1!B4"]


@pytest.mark.asyncio
async def test_driver_errors_become_error_results(workbook, settings) -> None:
    executor = ToolExecutor(workbook, settings)

    result = await executor.execute(
        ToolCall(name="write_values", args={"address": "Sheet1!A1:B1", "values": [[1]]}), turn_id="t"
    )

    assert result.status == "error"
    assert result.summary == "Tool write_values failed"
    assert result.error == "Expected a 1x2 grid for Sheet1!A1:B1"
    assert not result.changes


@pytest.mark.asyncio
async def test_unknown_tool_is_reported(workbook, settings) -> None:
    result = await ToolExecutor(workbook, settings).execute(ToolCall(name="drop_table"), turn_id="t")

    assert result.status == "error"
    assert result.error == "Unknown tool drop_table"


@pytest.mark.asyncio
async def test_format_and_sort_return_change_records(workbook, settings) -> None:
    executor = ToolExecutor(workbook, settings)

    formatted = await executor.execute(
        ToolCall(name="format_range", args={"address": "Sheet1!B2:C3", "numberFormat": "0.00", "bold": True}),
        turn_id="t",
    )
    sorted_result = await executor.execute(
        ToolCall(name="sort_range", args={"address": "Sheet1!A2:C3", "keyColumn": 1}), turn_id="t"
    )

    assert formatted.ok and sorted_result.ok
    assert list(formatted.edited_ranges) == ["Sheet1!B2:C3"]
    assert [change.address for change in formatted.changes] == ["Sheet1!B2:C3"]
    assert (await workbook.read_range("Sheet1!B2")).number_formats == (("0.00",),)
    assert sorted_result.summary == "Sorted Sheet1!A2:C3"
    assert sorted_result.data == {"changedCellCount": 6}
    assert [change.turn_id for change in sorted_result.changes] == ["t"]


@pytest.mark.asyncio
async def test_mutations_without_snapshots_are_only_cited(workbook, settings) -> None:
    executor = ToolExecutor(workbook, settings)

    result = await executor.execute(
        ToolCall(name="add_comment_or_note", args={"address": "Sheet1!A1", "text": "check"}), turn_id="t"
    )

    assert result.ok
    assert list(result.cited_ranges) == ["Sheet1!A1"]
    assert not result.edited_ranges
    assert not result.changes


@pytest.mark.asyncio
async def test_web_search_disabled(workbook, settings) -> None:
    result = await ToolExecutor(workbook, settings).execute(
        ToolCall(name="web_search", args={"query": "vat rates"}), turn_id="t"
    )

    assert result.status == "error"
    assert result.summary == "Web search is disabled in Settings."


@pytest.mark.asyncio
async def test_web_search_uses_injected_function(workbook, settings) -> None:
    seen: list[tuple[str, int]] = []

    async def search(query: str, max_results: int):
        seen.append((query, max_results))
        return [{"title": "VAT", "url": "https://example.com/vat", "snippet": "rates"}, {"url": "https://x.test"}]

    executor = ToolExecutor(workbook, replace(settings, web_search_enabled=True), web_search=search)

    result = await executor.execute(ToolCall(name="web_search", args={"query": "vat", "maxResults": 2}), turn_id="t")

    assert seen == [("vat", 2)]
    assert result.ok
    assert result.data["results"][1]["title"] == "Result 2"
    assert result.data["sources"] == "- VAT: https://example.com/vat\n- Result 2: https://x.test"


@pytest.mark.asyncio
async def test_web_search_per_call_override_wins(workbook, settings) -> None:
    async def default(query: str, max_results: int):
        raise AssertionError("default search should not run")

    def override(query: str, max_results: int):
        return [{"title": "Override", "url": "https://o.test"}]

    executor = ToolExecutor(workbook, replace(settings, web_search_enabled=True), web_search=default)

    result = await executor.execute(ToolCall(name="web_search", args={"query": "q"}), turn_id="t", web_search=override)

    assert result.data["results"][0]["title"] == "Override"


@pytest.mark.asyncio
async def test_web_search_endpoint(workbook, settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["q"] == "fx"
        assert request.url.params["limit"] == "5"
        return httpx.Response(200, json={"results": [{"title": "FX", "url": "https://fx.test"}]})

    configured = replace(settings, web_search_enabled=True, search_endpoint="https://search.test/api")
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        executor = ToolExecutor(workbook, configured, http_client=client)
        result = await executor.execute(ToolCall(name="web_search", args={"query": "fx"}), turn_id="t")

    assert result.ok
    assert result.data["results"] == [{"title": "FX", "url": "https://fx.test", "snippet": ""}]


@pytest.mark.asyncio
async def test_web_search_without_endpoint_fails(workbook, settings) -> None:
    executor = ToolExecutor(workbook, replace(settings, web_search_enabled=True))

    result = await executor.execute(ToolCall(name="web_search", args={"query": "fx"}), turn_id="t")

    assert result.status == "error"
    assert result.error == "Web search endpoint is not configured."


def test_truncate_text() -> None:
    assert truncate_text("short") == "short"
    long = "x" * (MAX_ERROR_CHARS + 10)
    assert truncate_text(long) == "x" * MAX_ERROR_CHARS + "..."
    assert truncate_text({"a": 1}) == '{"a": 1}'
