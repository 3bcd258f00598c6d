from __future__ import annotations

import json
from dataclasses import replace

import httpx
import pytest

from helpers import ScriptedAdapter, final, message_texts, tool_call

from cellpilot.ai import prompts
from cellpilot.ai.orchestration import runner as runner_module
from cellpilot.ai.orchestration.runner import AgentRunner, ApprovalRequest, RunnerConfig
from cellpilot.ai.providers.base import ProviderRequestError
from cellpilot.services.session_log import JsonlSessionLog
from cellpilot.services.telemetry import InMemoryTelemetrySink
from cellpilot.state.session_store import SessionStore


def _runner(workbook, settings, responses, **kwargs) -> tuple[AgentRunner, ScriptedAdapter]:
    adapter = kwargs.pop("adapter", None) or ScriptedAdapter(responses)
    kwargs.setdefault("config", RunnerConfig(retry_min_seconds=0, retry_max_seconds=0))
    return AgentRunner(workbook, settings, adapter=adapter, **kwargs), adapter


def _assistant_messages(runner: AgentRunner) -> list[str]:
    return [message.content for message in runner.session.messages if message.role == "assistant"]


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_tool_call_then_final_answer(workbook, settings) -> None:
    runner, adapter = _runner(
        workbook,
        settings,
        [
            tool_call("write_values", {"address": "Sheet1!D1", "values": [["Notes"]]}, reason="add header"),
            final("Added a header in [[Sheet1!D1]]."),
        ],
    )

    record = await runner.run_turn("Add a Notes header")

    assert record is not None
    assert [(entry.name, entry.status) for entry in record.tool_calls] == [("write_values", "success")]
    assert record.edited_ranges == ["Sheet1!D1"]
    assert record.provider == "gemini"
    assert record.estimated_input_tokens > 0
    assert record.estimated_output_tokens > 60
    assert runner.session.turn_records == [record]
    assert not runner.busy

    reply = runner.session.messages[-1]
    assert reply.role == "assistant"
    assert reply.id == f"{record.id}_streaming"
    assert reply.content == "Added a header in [[Sheet1!D1]]."
    assert not reply.streaming
    assert [citation.address for citation in reply.citations] == ["Sheet1!D1"]

    card = runner.session.tool_cards[0]
    assert card.status == "success"
    assert card.target_ranges == ["Sheet1!D1"]
    assert card.duration_ms is not None
    assert len(runner.ledger) == 1
    assert runner.session.range_changes[0].address == "Sheet1!D1"
    assert (await workbook.read_range("Sheet1!D1")).values == (("Notes",),)

    follow_up = message_texts(adapter.requests[1])
    assert "Tool call result for write_values: Updated values in Sheet1!D1" in follow_up
    tool_payload = json.loads(adapter.requests[1].messages[-1].content)
    assert tool_payload["status"] == "success"
    assert tool_payload["editedRanges"] == ["Sheet1!D1"]


@pytest.mark.asyncio
async def test_first_request_carries_context_and_prompt(workbook, settings) -> None:
    runner, adapter = _runner(workbook, settings, [final("Total is 15 [[Sheet1!B4]].")])

    await runner.run_turn("What is the Q1 total?")

    request = adapter.requests[0]
    assert request.messages[0].content == prompts.SYSTEM_PROMPT
    assert request.messages[1].content.startswith("Workbook context:\n")
    assert '"activeSheet":"Sheet1"' in request.messages[1].content
    assert request.messages[-1].content == "What is the Q1 total?"
    assert request.model == settings.model
    assert 512 <= request.max_output_tokens <= 4096
    assert len(request.tools) == 25


@pytest.mark.asyncio
async def test_missing_citation_falls_back_to_selection(workbook, settings) -> None:
    runner, _ = _runner(workbook, settings, [final("Everything looks fine.")])

    record = await runner.run_turn("Check the sheet")

    assert _assistant_messages(runner) == ["Everything looks fine.\n\nSources: [[Sheet1!A1:C4]]"]
    assert record.summary.endswith("Sources: [[Sheet1!A1:C4]]")
    assert runner.session.messages[-1].citations[0].address == "Sheet1!A1:C4"


@pytest.mark.asyncio
async def test_web_sources_are_appended(workbook, settings) -> None:
    async def search(query: str, max_results: int):
        return [{"title": "VAT", "url": "https://example.com/vat"}]

    approvals: list[ApprovalRequest] = []

    def approve(request: ApprovalRequest) -> bool:
        approvals.append(request)
        return True

    runner, _ = _runner(
        workbook,
        replace(settings, web_search_enabled=True),
        [tool_call("web_search", {"query": "vat rate"}), final("VAT applies to [[Sheet1!B2]].")],
        web_search=search,
    )

    record = await runner.run_turn("Look up VAT", ask_approval=approve)

    assert record is not None
    assert approvals[0].tool_name == "web_search"
    assert approvals[0].risk is not None
    assert _assistant_messages(runner)[-1].endswith("Web Sources:\n- https://example.com/vat")


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_rejected_tool_is_cancelled(workbook, settings) -> None:
    async def reject(request: ApprovalRequest) -> bool:
        return False

    runner, adapter = _runner(
        workbook,
        replace(settings, approval_mode=True),
        [tool_call("format_range", {"address": "Sheet1!B2:C3", "bold": True}), final("Skipped [[Sheet1!B2:C3]].")],
    )

    record = await runner.run_turn("Bold the numbers", ask_approval=reject)

    assert [(entry.name, entry.status) for entry in record.tool_calls] == [("format_range", "cancelled")]
    assert record.edited_ranges == []
    card = runner.session.tool_cards[0]
    assert card.status == "cancelled"
    assert card.result_preview == prompts.USER_REJECTED_PREVIEW
    cancelled = json.loads(adapter.requests[1].messages[-1].content)
    assert cancelled == {"status": "cancelled", "reason": "User rejected action."}


@pytest.mark.asyncio
async def test_missing_gate_rejects_in_approval_mode(workbook, settings) -> None:
    runner, _ = _runner(
        workbook,
        replace(settings, approval_mode=True),
        [tool_call("write_values", {"address": "Sheet1!D1", "values": [[1]]}), final("Nothing changed [[Sheet1!D1]].")],
    )

    record = await runner.run_turn("Write 1 into D1")

    assert record.tool_calls[0].status == "cancelled"
    assert (await workbook.read_range("Sheet1!D1")).values == (("",),)
    assert len(runner.ledger) == 0


@pytest.mark.asyncio
async def test_risky_overwrite_asks_even_without_approval_mode(workbook, settings) -> None:
    seen: list[ApprovalRequest] = []

    def approve(request: ApprovalRequest) -> bool:
        seen.append(request)
        return True

    runner, _ = _runner(
        workbook,
        settings,
        [tool_call("write_values", {"address": "Sheet1!B2", "values": [[12]]}), final("Updated [[Sheet1!B2]].")],
    )

    record = await runner.run_turn("Set North Q1 to 12", ask_approval=approve)

    assert seen[0].risk is not None
    assert seen[0].risk.overwritten_cells == 1
    assert record.tool_calls[0].status == "success"


# ---------------------------------------------------------------------------
# Corrections and failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_invalid_tool_call_gets_one_corrective_retry(workbook, settings) -> None:
    runner, adapter = _runner(
        workbook,
        settings,
        [
            tool_call("write_values", {"address": "Sheet1!D1"}),
            tool_call("write_values", {"address": "Sheet1!D1"}),
            final("I could not write the values [[Sheet1!D1]]."),
        ],
    )

    record = await runner.run_turn("Fill D1")

    assert record is not None
    assert record.tool_calls == []
    assert runner.session.tool_cards == []
    error = "Missing required argument: values"
    assert adapter.requests[1].messages[-1].content == prompts.validation_retry_message(error)
    assert adapter.requests[2].messages[-1].content == prompts.validation_rejected_message(error)


@pytest.mark.asyncio
async def test_truncated_json_is_retried_once(workbook, settings) -> None:
    runner, adapter = _runner(
        workbook,
        settings,
        [final('{"tool": "read_range", "args": {"addr'), final("Read it [[Sheet1!A1]].")],
    )

    await runner.run_turn("Read A1")

    assert adapter.requests[1].messages[-1].content == prompts.INVALID_JSON_RETRY
    assert _assistant_messages(runner) == ["Read it [[Sheet1!A1]]."]


@pytest.mark.asyncio
async def test_tool_failure_is_reported_back(workbook, settings) -> None:
    runner, adapter = _runner(
        workbook,
        settings,
        [
            tool_call("write_values", {"address": "Sheet1!D1:E1", "values": [[1]]}),
            final("The write failed [[Sheet1!D1:E1]]."),
        ],
    )

    record = await runner.run_turn("Fill D1:E1")

    assert record.tool_calls[0].status == "error"
    assert runner.session.tool_cards[0].status == "error"
    assert adapter.requests[1].messages[-1].content == prompts.tool_failure_message(
        "write_values", "Expected a 1x2 grid for Sheet1!D1:E1"
    )


@pytest.mark.asyncio
async def test_unknown_sheet_write_is_recoverable(workbook, settings) -> None:
    seen: list[ApprovalRequest] = []

    def approve(request: ApprovalRequest) -> bool:
        seen.append(request)
        return True

    runner, adapter = _runner(
        workbook,
        settings,
        [
            tool_call("write_values", {"address": "Nope!A1", "values": [[1]]}),
            final("Sheet Nope does not exist; nothing changed [[Sheet1!A1]]."),
        ],
    )

    record = await runner.run_turn("Write 1 into Nope!A1", ask_approval=approve)

    assert record is not None
    assert len(adapter.requests) == 2
    assert seen[0].risk.reason.startswith("Could not read target range Nope!A1")
    assert [(entry.name, entry.status) for entry in record.tool_calls] == [("write_values", "error")]
    assert adapter.requests[1].messages[-1].content == prompts.tool_failure_message(
        "write_values", "Sheet Nope not found"
    )


@pytest.mark.asyncio
async def test_iteration_limit_adds_single_message(workbook, settings) -> None:
    sink = InMemoryTelemetrySink("turn_failed")
    adapter = ScriptedAdapter([tool_call("read_range", {"address": "Sheet1!A1"})], repeat_last=True)
    runner, _ = _runner(
        workbook,
        settings,
        [],
        adapter=adapter,
        config=RunnerConfig(max_tool_iterations=3, retry_min_seconds=0, retry_max_seconds=0),
    )

    record = await runner.run_turn("Loop forever")

    assert record is None
    assert len(adapter.requests) == 3
    assert _assistant_messages(runner) == [prompts.ITERATION_LIMIT_MESSAGE]
    assert runner.session.timeline_step("execution").status == "error"
    assert not runner.busy
    assert [event["reason"] for event in sink.events("turn_failed")] == ["iteration_limit"]
    sink.close()


@pytest.mark.asyncio
async def test_budget_rejection_stops_before_any_model_call(workbook, settings) -> None:
    sink = InMemoryTelemetrySink("turn_failed")
    runner, adapter = _runner(workbook, replace(settings, max_token_budget=10), [final("unused")])

    record = await runner.run_turn("Summarize")

    assert record is None
    assert adapter.requests == []
    assert _assistant_messages(runner) == [prompts.budget_exceeded_message(10)]
    step = runner.session.timeline_step("context")
    assert step.status == "error"
    assert step.details[-1] == "Request exceeds max token budget (10)."
    assert sink.events("turn_failed")[0]["reason"] == "budget"
    assert not runner.busy
    sink.close()


@pytest.mark.asyncio
async def test_unexpected_error_becomes_failure_message(workbook, settings) -> None:
    runner, _ = _runner(workbook, settings, [RuntimeError("boom")])

    record = await runner.run_turn("Anything")

    assert record is None
    assert _assistant_messages(runner) == ["The turn failed before completion: boom"]
    assert runner.session.timeline_step("summary").status == "error"
    assert not runner.busy


@pytest.mark.asyncio
async def test_transport_errors_are_retried(workbook, settings) -> None:
    runner, adapter = _runner(
        workbook,
        settings,
        [httpx.ConnectError("connection refused"), final("Recovered [[Sheet1!A1]].")],
    )

    record = await runner.run_turn("Retry please")

    assert record is not None
    assert len(adapter.requests) == 2


@pytest.mark.asyncio
async def test_retries_are_bounded(workbook, settings) -> None:
    runner, adapter = _runner(
        workbook,
        settings,
        [
            ProviderRequestError("HTTP 503: busy", status_code=503),
            ProviderRequestError("HTTP 503: still busy", status_code=503),
        ],
    )

    record = await runner.run_turn("Retry please")

    assert record is None
    assert len(adapter.requests) == 2
    assert _assistant_messages(runner) == ["The turn failed before completion: HTTP 503: still busy"]


# ---------------------------------------------------------------------------
# Memory, undo and logging
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_long_history_is_compacted_into_memory(workbook, settings, tmp_path) -> None:
    session = SessionStore()
    for index in range(12):
        session.add_message("user" if index % 2 == 0 else "assistant", f"message {index} " + "x " * 2000)
    log = JsonlSessionLog(tmp_path / "session.jsonl")
    runner, adapter = _runner(
        workbook,
        replace(settings, max_token_budget=14_000, logging_enabled=True),
        [final("- User is reviewing quarterly totals."), final("Done [[Sheet1!B4]].")],
        session=session,
        session_log=log,
    )

    record = await runner.run_turn("Continue")

    assert record is not None
    assert session.memory is not None
    assert session.memory.summary == "- User is reviewing quarterly totals."
    assert session.messages[0].role == "memory"
    assert "Auto-compaction applied to older turns." in session.timeline_step("context").details

    compaction_request, turn_request = adapter.requests
    assert compaction_request.tools == ()
    texts = message_texts(turn_request)
    assert "Memory summary:\n- User is reviewing quarterly totals." in texts
    assert all(message.role != "memory" for message in turn_request.messages)

    rows = log.read_rows()
    assert [row["Type"] for row in rows] == ["memory", "turn"]
    assert rows[1]["Prompt"] == "Continue"


@pytest.mark.asyncio
async def test_compaction_is_kept_when_budget_still_fails(workbook, settings, tmp_path) -> None:
    session = SessionStore()
    for index in range(12):
        session.add_message("user" if index % 2 == 0 else "assistant", f"message {index} " + "x " * 2000)
    log = JsonlSessionLog(tmp_path / "session.jsonl")
    runner, adapter = _runner(
        workbook,
        replace(settings, max_token_budget=1_000, logging_enabled=True),
        [final("- Long discussion about totals.")],
        session=session,
        session_log=log,
    )

    record = await runner.run_turn("Continue")

    assert record is None
    assert len(adapter.requests) == 1
    assert session.memory is not None
    assert session.memory.summary == "- Long discussion about totals."
    assert session.messages[0].role == "memory"
    assert session.messages[-1].content == prompts.budget_exceeded_message(1_000)
    assert [row["Type"] for row in log.read_rows()] == ["memory"]


@pytest.mark.asyncio
async def test_undo_and_revert(workbook, settings) -> None:
    runner, _ = _runner(
        workbook,
        settings,
        [
            tool_call("write_values", {"address": "Sheet1!D1", "values": [["a"]]}),
            tool_call("write_values", {"address": "Sheet1!D2", "values": [["b"]]}),
            final("Wrote [[Sheet1!D1:D2]]."),
        ],
    )
    record = await runner.run_turn("Write a and b")
    first_change = runner.session.range_changes[-1]

    reverted = await runner.revert_change(first_change.change_id)
    assert reverted.address == "Sheet1!D1"
    assert (await workbook.read_range("Sheet1!D1")).values == (("",),)

    undone = await runner.undo_turn()
    assert [change.address for change in undone] == ["Sheet1!D2"]
    assert all(change.reverted for change in runner.session.range_changes)
    assert await runner.undo_turn(record.id) == []


@pytest.mark.asyncio
async def test_undo_turn_reverts_a_sort(workbook, settings) -> None:
    runner, _ = _runner(
        workbook,
        settings,
        [
            tool_call("sort_range", {"address": "Sheet1!A2:C3", "keyColumn": 1}),
            final("Sorted [[Sheet1!A2:C3]] by Q1."),
        ],
    )

    record = await runner.run_turn("Sort by Q1")
    assert record.edited_ranges == ["Sheet1!A2:C3"]
    assert (await workbook.read_range("Sheet1!A2:A3")).values == (("South",), ("North",))

    undone = await runner.undo_turn(record.id)

    assert [change.address for change in undone] == ["Sheet1!A2:C3"]
    assert (await workbook.read_range("Sheet1!A2:A3")).values == (("North",), ("South",))


@pytest.mark.asyncio
async def test_turn_log_respects_logging_switch(workbook, settings, tmp_path) -> None:
    log = JsonlSessionLog(tmp_path / "session.jsonl")
    runner, _ = _runner(
        workbook,
        settings,
        [final("Hi [[Sheet1!A1]]."), final("Hi again [[Sheet1!A1]].")],
        session_log=log,
    )

    await runner.run_turn("Hello")
    assert log.read_rows() == []

    runner.settings = replace(settings, logging_enabled=True)
    await runner.run_turn("Hello again")

    rows = log.read_rows()
    assert len(rows) == 1
    assert rows[0]["Prompt"] == "Hello again"
    assert rows[0]["Summary"] == "Hi again [[Sheet1!A1]]."


@pytest.mark.asyncio
async def test_factory_adapters_are_reused_and_closed(workbook, settings) -> None:
    class _ClosingAdapter(ScriptedAdapter):
        closed = False

        async def aclose(self) -> None:
            self.closed = True

    built: list[_ClosingAdapter] = []

    def factory(provider_id: str) -> _ClosingAdapter:
        adapter = _ClosingAdapter([final("Hi [[Sheet1!A1]]."), final("Hi again [[Sheet1!A1]].")])
        built.append(adapter)
        return adapter

    runner = AgentRunner(workbook, settings, adapter_factory=factory)

    await runner.run_turn("Hello")
    await runner.run_turn("Hello again")
    await runner.aclose()

    assert len(built) == 1
    assert len(built[0].requests) == 2
    assert built[0].closed


def test_turn_state_without_budget_raises() -> None:
    state = runner_module._TurnState(turn_id="turn-1", prompt="Hello")

    with pytest.raises(RuntimeError, match="turn-1 has no fitted context budget"):
        state.estimate
