"""Agent runner: drives one prompt through model calls and tool executions to a cited answer."""

from __future__ import annotations

import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Mapping, Sequence

import httpx
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from ...documents.types import DocumentDriver, RangeChange
from ...services import telemetry as telemetry_service
from ...services.session_log import NullSessionLog, SessionLogSink
from ...state.models import ChatMessage, ToolCallEntry, ToolCard, TurnRecord
from ...state.session_store import SessionStore
from ...utils.citations import Citation, extract_citations
from .. import prompts
from ..providers import get_provider_adapter
from ..providers.base import ProviderAdapter, ProviderRequestError
from ..tools.catalog import WEB_SEARCH_TOOL, build_default_registry
from ..tools.executor import ToolExecutor, WebSearchFn
from ..tools.registry import ToolRegistry
from ..tools.risk import assess_tool_risk, requires_approval
from ..tools.types import ConfirmationRequest, ToolExecutionResult
from ..tools.validation import validate_tool_call
from ..types import FinalResponse, LlmMessage, LlmRequest, LlmResponse, ToolCall
from ..utils.tokens import TokenEstimate, estimate_payload_tokens
from .budget_manager import BudgetManager, BudgetOutcome, BudgetStep, ContextBudgetExceeded
from .context_pack import serialize_workbook_context
from .ledger import ChangeLedger
from .memory import CompactionResult, compact_conversation

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ...services.settings import Settings

LOGGER = logging.getLogger(__name__)

__all__ = [
    "MAX_HISTORY_MESSAGES",
    "MAX_TOOL_ITERATIONS",
    "AgentRunner",
    "ApprovalGate",
    "ApprovalRequest",
    "RunnerConfig",
]

MAX_TOOL_ITERATIONS = 8
MAX_HISTORY_MESSAGES = 16
MAX_OUTPUT_TOKENS = 4096
MIN_OUTPUT_TOKENS = 512
ARGS_PREVIEW_CHARS = 2000
RESULT_PREVIEW_CHARS = 800
HISTORY_ARGS_CHARS = 800
SUMMARY_CHARS = 400


@dataclass(slots=True, frozen=True)
class ApprovalRequest:
    """What the approval gate is asked to decide on."""

    tool_name: str
    reason: str
    args: Mapping[str, Any]
    risk: ConfirmationRequest | None = None


ApprovalGate = Callable[[ApprovalRequest], "Awaitable[bool] | bool"]
AdapterFactory = Callable[[str], ProviderAdapter]


@dataclass(slots=True)
class RunnerConfig:
    """Loop bounds and transport retry policy."""

    max_tool_iterations: int = MAX_TOOL_ITERATIONS
    max_history_messages: int = MAX_HISTORY_MESSAGES
    retry_attempts: int = 2
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 4.0

    @classmethod
    def from_settings(cls, settings: "Settings") -> "RunnerConfig":
        return cls(
            max_tool_iterations=max(1, int(settings.max_tool_iterations)),
            max_history_messages=max(1, int(settings.max_history_messages)),
        )


@dataclass(slots=True)
class _TurnState:
    turn_id: str
    prompt: str
    budget: BudgetOutcome | None = None
    tool_history: list[ToolCallEntry] = field(default_factory=list)
    edited_ranges: list[str] = field(default_factory=list)
    web_sources: list[str] = field(default_factory=list)
    estimated_output_tokens: int = 0
    invalid_json_retry: bool = False
    invalid_tool_retry: bool = False

    @property
    def streaming_id(self) -> str:
        return f"{self.turn_id}_streaming"

    @property
    def estimate(self) -> TokenEstimate:
        if self.budget is None:
            raise RuntimeError(f"Turn {self.turn_id} has no fitted context budget")
        return self.budget.estimate


async def _deny(_: ApprovalRequest) -> bool:
    LOGGER.info("No approval gate configured; rejecting tool call")
    return False


def _looks_like_truncated_json(text: str) -> bool:
    trimmed = text.strip()
    return trimmed.startswith("{") and not trimmed.endswith("}")


def _target_ranges(args: Mapping[str, Any]) -> list[str]:
    target = args.get("address") or args.get("sourceAddress") or ""
    return [str(target)] if target else []


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


class AgentRunner:
    """Runs one turn at a time against a document driver.

    The runner owns the session store while a turn is in flight. Starting a second turn while
    :attr:`busy` is set is a caller error: it is logged but not blocked.
    """

    def __init__(
        self,
        driver: DocumentDriver,
        settings: "Settings",
        *,
        session: SessionStore | None = None,
        adapter: ProviderAdapter | None = None,
        adapter_factory: AdapterFactory | None = None,
        registry: ToolRegistry | None = None,
        executor: ToolExecutor | None = None,
        ledger: ChangeLedger | None = None,
        session_log: SessionLogSink | None = None,
        config: RunnerConfig | None = None,
        web_search: WebSearchFn | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._driver = driver
        self._settings = settings
        self._session = session or SessionStore()
        self._adapter = adapter
        self._http_client = http_client
        self._adapter_factory = adapter_factory or self._default_adapter
        self._registry = registry or build_default_registry()
        self._executor = executor or ToolExecutor(driver, settings, web_search=web_search, http_client=http_client)
        self._ledger = ledger or ChangeLedger(driver)
        self._session_log: SessionLogSink = session_log or NullSessionLog()
        self._config = config or RunnerConfig.from_settings(settings)
        self._owned_adapters: dict[str, ProviderAdapter] = {}

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def settings(self) -> "Settings":
        return self._settings

    @settings.setter
    def settings(self, value: "Settings") -> None:
        self._settings = value
        self._executor.settings = value

    @property
    def session(self) -> SessionStore:
        return self._session

    @property
    def ledger(self) -> ChangeLedger:
        return self._ledger

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def busy(self) -> bool:
        return self._session.busy

    # ------------------------------------------------------------------
    # Turn entry point
    # ------------------------------------------------------------------

    async def run_turn(
        self,
        prompt: str,
        ask_approval: ApprovalGate | None = None,
        web_search_override: WebSearchFn | None = None,
    ) -> TurnRecord | None:
        """Run ``prompt`` to completion; returns the turn record, or ``None`` when the turn failed."""

        if self.busy:
            LOGGER.warning("run_turn called while another turn is in flight")
        session = self._session
        session.set_busy(True)
        state: _TurnState | None = None
        started = time.perf_counter()
        try:
            turn_id = session.start_turn(prompt)
            state = _TurnState(turn_id=turn_id, prompt=prompt)
            adapter = self._resolve_adapter()
            session.set_timeline_step("understanding", "running", "Interpreting user intent and constraints.")
            session.set_timeline_step("understanding", "success", "Intent captured.")

            session.set_timeline_step("context", "running", "Collecting active sheet and selection context.")
            history = self._trim_history(message for message in session.messages if message.role != "memory")
            try:
                state.budget = await self._budget_manager(adapter).fit(
                    history, memory_summary=session.memory.summary if session.memory else None
                )
            except ContextBudgetExceeded as exc:
                # Compaction results are kept even when the ladder is exhausted.
                self._apply_compaction(exc.outcome.compaction)
                self._fail_budget(exc.outcome)
                return None
            self._apply_compaction(state.budget.compaction)
            session.set_timeline_step(
                "context",
                "success",
                f"Prepared {state.budget.level} context with estimated {state.estimate.input_tokens} input tokens.",
            )

            record = await self._loop(state, adapter, ask_approval or _deny, web_search_override)
            if record is None:
                session.add_message("assistant", prompts.ITERATION_LIMIT_MESSAGE)
                session.set_timeline_step("execution", "error", "Reached max tool iterations.")
                session.set_timeline_step("summary", "error", "Turn incomplete.")
                self._emit_failure(state, "iteration_limit", started)
            return record
        except Exception as exc:
            LOGGER.exception("Turn failed: %s", exc)
            session.add_message("assistant", prompts.turn_failed_message(str(exc)))
            session.set_timeline_step("summary", "error", "Turn failed.")
            self._emit_failure(state, "error", started, error=str(exc))
            return None
        finally:
            session.finish_turn()
            session.set_busy(False)

    # ------------------------------------------------------------------
    # Manual revert
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        """Close the adapters built by the factory; an injected adapter is left to its owner."""

        adapters = list(self._owned_adapters.values())
        self._owned_adapters.clear()
        for adapter in adapters:
            await adapter.aclose()

    async def revert_change(self, change_id: str) -> RangeChange:
        change = await self._ledger.revert(change_id)
        self._session.mark_range_change_reverted(change.change_id)
        return change

    async def undo_turn(self, turn_id: str | None = None) -> list[RangeChange]:
        """Revert every outstanding change of ``turn_id`` (the latest turn with changes by default)."""

        target = turn_id or self._ledger.latest_turn_id()
        if target is None:
            return []
        reverted = await self._ledger.revert_turn(target)
        for change in reverted:
            self._session.mark_range_change_reverted(change.change_id)
        return reverted

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _loop(
        self,
        state: _TurnState,
        adapter: ProviderAdapter,
        ask_approval: ApprovalGate,
        web_search_override: WebSearchFn | None,
    ) -> TurnRecord | None:
        session = self._session
        messages = self._build_llm_messages(state.budget)
        session.set_timeline_step("planning", "running", "Generating action plan and deciding whether tools are needed.")

        for iteration in range(self._config.max_tool_iterations):
            LOGGER.debug("Turn %s iteration %s", state.turn_id, iteration + 1)
            response = await self._complete(adapter, self._build_request(state, messages))
            state.estimated_output_tokens += response.estimated_output_tokens

            if isinstance(response, FinalResponse):
                if _looks_like_truncated_json(response.text) and not state.invalid_json_retry:
                    state.invalid_json_retry = True
                    LOGGER.info("Final text looked like truncated JSON; asking the model to retry")
                    messages.append(LlmMessage.user(prompts.INVALID_JSON_RETRY))
                    continue
                return self._finalize(state, response.text)

            call = response.call
            outcome = validate_tool_call(call, self._registry)
            if not outcome.ok:
                if not state.invalid_tool_retry:
                    state.invalid_tool_retry = True
                    messages.append(LlmMessage.user(prompts.validation_retry_message(outcome.message)))
                else:
                    messages.append(LlmMessage.user(prompts.validation_rejected_message(outcome.message)))
                continue
            state.invalid_tool_retry = False

            await self._handle_tool_call(state, call, messages, ask_approval, web_search_override)
        return None

    async def _handle_tool_call(
        self,
        state: _TurnState,
        call: ToolCall,
        messages: list[LlmMessage],
        ask_approval: ApprovalGate,
        web_search_override: WebSearchFn | None,
    ) -> None:
        session = self._session
        session.set_timeline_step("planning", "success", f"Planned tool call: {call.name}")
        session.set_timeline_step("execution", "running", f"Executing {call.name}")
        args_json = _dumps(dict(call.args))
        card_id = session.add_tool_card(
            ToolCard(
                tool_name=call.name,
                reason=call.reason,
                target_ranges=_target_ranges(call.args),
                args_preview=args_json[:ARGS_PREVIEW_CHARS],
                status="running",
                started_at=time.time(),
            )
        )

        risk = await assess_tool_risk(call, self._settings, self._driver)
        if requires_approval(call.name, risk, self._settings):
            decision = ask_approval(ApprovalRequest(tool_name=call.name, reason=call.reason, args=call.args, risk=risk))
            approved = await decision if inspect.isawaitable(decision) else decision
            if not approved:
                LOGGER.info("User rejected %s", call.name)
                self._close_card(card_id, status="cancelled", result_preview=prompts.USER_REJECTED_PREVIEW)
                state.tool_history.append(
                    ToolCallEntry(name=call.name, args=args_json[:HISTORY_ARGS_CHARS], status="cancelled")
                )
                messages.append(
                    LlmMessage.tool(_dumps({"status": "cancelled", "reason": "User rejected action."}), name=call.name)
                )
                return

        result = await self._executor.execute(call, turn_id=state.turn_id, web_search=web_search_override)
        preview = result.error if result.error else _dumps(result.data if result.data is not None else result.summary)
        self._close_card(
            card_id,
            status="success" if result.ok else "error",
            result_preview=preview[:RESULT_PREVIEW_CHARS],
            error=result.error,
        )
        state.tool_history.append(ToolCallEntry(name=call.name, args=args_json[:HISTORY_ARGS_CHARS], status=result.status))
        self._record_changes(state, result)
        if call.name == WEB_SEARCH_TOOL:
            self._collect_web_sources(state, result)

        messages.append(LlmMessage.assistant(f"Tool call result for {call.name}: {result.summary}"))
        payload = result.to_model_payload()
        messages.append(LlmMessage.tool(_dumps(payload), name=call.name))
        state.estimated_output_tokens += estimate_payload_tokens(payload)
        if not result.ok:
            messages.append(LlmMessage.user(prompts.tool_failure_message(call.name, result.error or result.summary)))

    def _record_changes(self, state: _TurnState, result: ToolExecutionResult) -> None:
        for address in result.edited_ranges:
            if address not in state.edited_ranges:
                state.edited_ranges.append(address)
        for change in result.changes:
            self._ledger.record(change)
            self._session.add_range_change(change)

    @staticmethod
    def _collect_web_sources(state: _TurnState, result: ToolExecutionResult) -> None:
        data = result.data if isinstance(result.data, Mapping) else {}
        for item in data.get("results") or ():
            url = item.get("url") if isinstance(item, Mapping) else None
            if url and url not in state.web_sources:
                state.web_sources.append(url)

    def _close_card(self, card_id: str, *, status: str, result_preview: str, error: str | None = None) -> None:
        card = self._session.get_tool_card(card_id)
        ended_at = time.time()
        started_at = card.started_at if card is not None and card.started_at is not None else ended_at
        self._session.update_tool_card(
            card_id,
            status=status,
            ended_at=ended_at,
            duration_ms=(ended_at - started_at) * 1000.0,
            result_preview=result_preview,
            error=error,
        )

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def _finalize(self, state: _TurnState, text: str) -> TurnRecord:
        session = self._session
        settings = self._settings
        final_text = text
        citations = extract_citations(final_text)
        if not citations:
            fallback = state.budget.context.selection.address
            final_text = f"{final_text}\n\nSources: [[{fallback}]]"
            citations = [Citation(label=fallback, address=fallback)]
        if state.web_sources:
            lines = "\n".join(f"- {url}" for url in state.web_sources)
            final_text = f"{final_text}\n\nWeb Sources:\n{lines}"

        updated = session.update_message(state.streaming_id, content=final_text, citations=citations, streaming=False)
        if not updated:
            session.add_message("assistant", final_text, message_id=state.streaming_id, citations=citations)

        session.set_timeline_step("planning", "success", "Plan complete.")
        session.set_timeline_step("execution", "success", "No further tool calls.")
        session.set_timeline_step("summary", "running", "Preparing cited response and audit logs.")

        record = TurnRecord(
            id=state.turn_id,
            prompt=state.prompt,
            provider=settings.provider,
            model=settings.model,
            estimated_input_tokens=state.estimate.input_tokens,
            estimated_output_tokens=state.estimated_output_tokens,
            tool_calls=list(state.tool_history),
            edited_ranges=list(state.edited_ranges),
            summary=final_text[:SUMMARY_CHARS],
        )
        session.add_turn_record(record)
        if settings.logging_enabled:
            self._session_log.log_turn(record)
        session.set_timeline_step("summary", "success", "Turn complete.")
        telemetry_service.emit(
            "turn_completed",
            {
                "turn_id": record.id,
                "provider": record.provider,
                "model": record.model,
                "tool_calls": len(record.tool_calls),
                "edited_ranges": list(record.edited_ranges),
                "estimated_input_tokens": record.estimated_input_tokens,
                "estimated_output_tokens": record.estimated_output_tokens,
            },
        )
        return record

    def _fail_budget(self, outcome: BudgetOutcome) -> None:
        budget = outcome.budget
        self._session.set_timeline_step("context", "error", f"Request exceeds max token budget ({budget}).")
        self._session.add_message("assistant", prompts.budget_exceeded_message(budget))
        telemetry_service.emit(
            "turn_failed",
            {"reason": "budget", "budget": budget, "estimated_total": outcome.estimate.total},
        )

    def _emit_failure(self, state: _TurnState | None, reason: str, started: float, *, error: str | None = None) -> None:
        payload: dict[str, Any] = {
            "reason": reason,
            "turn_id": state.turn_id if state is not None else None,
            "duration_ms": round((time.perf_counter() - started) * 1000.0, 3),
        }
        if error:
            payload["error"] = error
        telemetry_service.emit("turn_failed", payload)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _trim_history(self, messages: Iterable[ChatMessage]) -> list[ChatMessage]:
        kept = [message for message in messages if message.role != "system"]
        return kept[-self._config.max_history_messages :]

    def _budget_manager(self, adapter: ProviderAdapter) -> BudgetManager:
        settings = self._settings

        async def compactor(history: Sequence[ChatMessage]) -> CompactionResult:
            return await compact_conversation(
                adapter,
                history,
                provider=settings.provider,
                model=settings.model,
                api_key=settings.api_key or None,
                proxy_base_url=settings.proxy_base_url or None,
                proxy_enabled=settings.proxy_enabled,
            )

        return BudgetManager(
            driver=self._driver,
            budget=settings.max_token_budget,
            tools=self._registry.specs(),
            system_prompt=prompts.SYSTEM_PROMPT,
            compactor=compactor,
            on_step=self._on_budget_step,
        )

    def _on_budget_step(self, step: BudgetStep) -> None:
        if step.name != "drop_oldest":
            self._session.set_timeline_step("context", "running", step.detail)

    def _apply_compaction(self, compaction: CompactionResult | None) -> None:
        if compaction is None or not compaction.memory.summary:
            return
        self._session.set_memory(compaction.memory)
        self._session.replace_messages(compaction.messages)
        if self._settings.logging_enabled:
            self._session_log.log_memory(
                compaction.memory, provider=self._settings.provider, model=self._settings.model
            )

    def _build_llm_messages(self, budget: BudgetOutcome) -> list[LlmMessage]:
        messages = [
            LlmMessage.system(prompts.SYSTEM_PROMPT),
            LlmMessage.system(f"Workbook context:\n{serialize_workbook_context(budget.context)}"),
        ]
        memory = self._session.memory
        if memory is not None and memory.summary:
            messages.append(LlmMessage.system(f"Memory summary:\n{memory.summary}"))
        messages.extend(
            LlmMessage(role=message.role, content=message.content)
            for message in budget.history
            if message.role != "memory"
        )
        return messages

    def _build_request(self, state: _TurnState, messages: Sequence[LlmMessage]) -> LlmRequest:
        settings = self._settings
        max_output = min(MAX_OUTPUT_TOKENS, max(MIN_OUTPUT_TOKENS, settings.max_token_budget - state.estimate.input_tokens))
        return LlmRequest(
            provider=settings.provider,
            model=settings.model,
            max_output_tokens=max_output,
            messages=list(messages),
            tools=self._registry.specs(),
            api_key=settings.api_key or None,
            proxy_base_url=settings.proxy_base_url or None,
            proxy_enabled=settings.proxy_enabled,
            on_text_delta=lambda delta: self._on_text_delta(state, delta),
        )

    def _on_text_delta(self, state: _TurnState, delta: str) -> None:
        if self._session.get_message(state.streaming_id) is None:
            self._session.add_message("assistant", delta, message_id=state.streaming_id, streaming=True)
            return
        self._session.append_to_message(state.streaming_id, delta)

    async def _complete(self, adapter: ProviderAdapter, request: LlmRequest) -> LlmResponse:
        config = self._config
        async for attempt in AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, config.retry_attempts)),
            wait=wait_exponential(multiplier=config.retry_min_seconds, max=config.retry_max_seconds),
            retry=retry_if_exception_type((ProviderRequestError, httpx.TransportError)),
            before_sleep=before_sleep_log(LOGGER, logging.WARNING),
        ):
            with attempt:
                return await adapter.create_completion(request)
        raise AssertionError("unreachable")  # pragma: no cover

    def _resolve_adapter(self) -> ProviderAdapter:
        if self._adapter is not None:
            return self._adapter
        provider = self._settings.provider
        adapter = self._owned_adapters.get(provider)
        if adapter is None:
            adapter = self._owned_adapters[provider] = self._adapter_factory(provider)
        return adapter

    def _default_adapter(self, provider_id: str) -> ProviderAdapter:
        return get_provider_adapter(
            provider_id, http_client=self._http_client, timeout=float(self._settings.request_timeout)
        )
