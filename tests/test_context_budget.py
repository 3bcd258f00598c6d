from __future__ import annotations

import pytest

from cellpilot.ai.orchestration.budget_manager import BudgetManager, ContextBudgetExceeded
from cellpilot.ai.orchestration.context_pack import build_workbook_context, serialize_workbook_context
from cellpilot.ai.orchestration.memory import CompactionResult
from cellpilot.documents.workbook import InMemoryWorkbook
from cellpilot.services.telemetry import InMemoryTelemetrySink
from cellpilot.state.models import ChatMessage, MemoryState


@pytest.fixture()
def wide_workbook() -> InMemoryWorkbook:
    rows = [[f"r{row}c{column}" for column in range(30)] for row in range(30)]
    return InMemoryWorkbook.from_dict(
        {
            "sheets": {"Data": rows},
            "selection": "Data!A1:AD30",
            "tables": [{"name": "Grid", "address": "Data!A1:D10"}],
            "charts": [{"name": "Chart1", "sheet": "Data", "source": "Data!A1:B5"}],
            "pivots": [{"name": "Pivot1", "sheet": "Data", "source": "Data!A1:B5", "destination": "Data!F1"}],
        }
    )


def _history(count: int) -> list[ChatMessage]:
    roles = ("user", "assistant")
    return [ChatMessage(role=roles[index % 2], content=f"message {index} " + "x" * 200) for index in range(count)]


async def _short_compactor(messages):
    memory = MemoryState(summary="- earlier: totals discussed")
    kept = list(messages)[-6:]
    return CompactionResult(
        memory=memory,
        messages=[ChatMessage(role="memory", content=f"Conversation memory:\n{memory.summary}"), *kept],
    )


# ---------------------------------------------------------------------------
# Context levels
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_context_levels_shrink(wide_workbook) -> None:
    full = await build_workbook_context(wide_workbook, "full")
    focused = await build_workbook_context(wide_workbook, "selection_only")
    minimal = await build_workbook_context(wide_workbook, "minimal")

    assert full.selection.address == "Data!A1:T20"
    assert focused.selection.address == "Data!A1:L12"
    assert minimal.selection.address == "Data!A1:H8"

    assert full.workbook_map.charts == ("Data.Chart1",)
    assert full.workbook_map.pivot_tables == ("Data.Pivot1",)
    assert focused.workbook_map.tables == ("Data.Grid",)
    assert focused.workbook_map.charts == ()
    assert focused.workbook_map.pivot_tables == ()
    assert minimal.workbook_map.tables == ()
    assert minimal.workbook_map.sheets == full.workbook_map.sheets

    sizes = [len(serialize_workbook_context(pack)) for pack in (full, focused, minimal)]
    assert sizes == sorted(sizes, reverse=True)


@pytest.mark.asyncio
async def test_small_selection_is_not_padded(workbook) -> None:
    pack = await build_workbook_context(workbook, "minimal")

    assert pack.selection.address == "Sheet1!A1:C4"
    assert pack.active_sheet == "Sheet1"


# ---------------------------------------------------------------------------
# Degradation ladder
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_no_steps_when_request_fits(wide_workbook) -> None:
    manager = BudgetManager(driver=wide_workbook, budget=200_000)

    outcome = await manager.fit(_history(3))

    assert outcome.steps == []
    assert outcome.level == "full"
    assert outcome.within_budget
    assert len(outcome.history) == 3


@pytest.mark.asyncio
async def test_selection_focus_is_the_first_step(wide_workbook) -> None:
    history = _history(2)
    probe = BudgetManager(driver=wide_workbook, budget=1)
    focused = await build_workbook_context(wide_workbook, "selection_only")
    budget = probe.estimate(focused, history, None).total
    manager = BudgetManager(driver=wide_workbook, budget=budget)

    outcome = await manager.fit(history)

    assert [step.name for step in outcome.steps] == ["selection_only"]
    assert outcome.level == "selection_only"
    assert outcome.estimate.total == budget
    assert outcome.steps[0].detail == "Budget pressure detected; trimmed workbook context to selection focus."


@pytest.mark.asyncio
async def test_full_ladder_runs_in_order(wide_workbook) -> None:
    calls: list[int] = []

    async def compactor(messages):
        calls.append(len(messages))
        return await _short_compactor(messages)

    manager = BudgetManager(driver=wide_workbook, budget=10, compactor=compactor)

    outcome = await manager.fit(_history(10), raise_on_reject=False)

    names = [step.name for step in outcome.steps]
    assert names == ["selection_only", "compaction", "minimal", "drop_oldest", "drop_oldest", "drop_oldest"]
    assert calls == [10]
    assert outcome.level == "minimal"
    assert len(outcome.history) == 4
    assert outcome.memory is not None and outcome.memory.summary == "- earlier: totals discussed"
    totals = [step.estimate.total for step in outcome.steps]
    assert totals == sorted(totals, reverse=True)
    assert not outcome.within_budget


@pytest.mark.asyncio
async def test_compaction_needs_long_history(wide_workbook) -> None:
    async def compactor(messages):
        raise AssertionError("compaction should not run for short histories")

    manager = BudgetManager(driver=wide_workbook, budget=10, compactor=compactor)

    outcome = await manager.fit(_history(8), raise_on_reject=False)

    names = [step.name for step in outcome.steps]
    assert "compaction" not in names
    assert names[:2] == ["selection_only", "minimal"]
    assert names.count("drop_oldest") == 4


@pytest.mark.asyncio
async def test_rejection_raises_with_outcome(wide_workbook) -> None:
    manager = BudgetManager(driver=wide_workbook, budget=10)

    with pytest.raises(ContextBudgetExceeded) as excinfo:
        await manager.fit(_history(2))

    outcome = excinfo.value.outcome
    assert outcome.budget == 10
    assert outcome.level == "minimal"
    assert "Context budget exceeded" in str(excinfo.value)


@pytest.mark.asyncio
async def test_steps_are_reported_to_telemetry_and_listener(wide_workbook) -> None:
    sink = InMemoryTelemetrySink("context_budget_step")
    seen = []
    manager = BudgetManager(driver=wide_workbook, budget=10, on_step=seen.append)

    try:
        outcome = await manager.fit(_history(5), raise_on_reject=False)
    finally:
        sink.close()

    events = sink.events("context_budget_step")
    assert [event["step"] for event in events] == [step.name for step in outcome.steps]
    assert seen == outcome.steps
    first = events[0]
    assert first["budget"] == 10
    assert set(first) >= {"event", "step", "detail", "input_tokens", "output_tokens", "total"}
