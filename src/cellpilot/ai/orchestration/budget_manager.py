"""Fit the workbook context and conversation into the per-turn token ceiling."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Sequence

from ...documents.types import ContextPack, DocumentDriver
from ...services import telemetry as telemetry_service
from ...state.models import ChatMessage, MemoryState
from ..prompts import SYSTEM_PROMPT
from ..tools.types import ToolSpec
from ..utils.tokens import TokenEstimate, estimate_request_tokens
from .context_pack import ContextLevel, build_workbook_context, serialize_workbook_context
from .memory import CompactionResult

LOGGER = logging.getLogger(__name__)

__all__ = [
    "COMPACTION_MIN_HISTORY",
    "DROP_MIN_HISTORY",
    "BudgetManager",
    "BudgetOutcome",
    "BudgetStep",
    "ContextBudgetExceeded",
]

COMPACTION_MIN_HISTORY = 8
DROP_MIN_HISTORY = 4

Compactor = Callable[[Sequence[ChatMessage]], Awaitable[CompactionResult]]
StepListener = Callable[["BudgetStep"], Any]


@dataclass(slots=True, frozen=True)
class BudgetStep:
    """One applied degradation step."""

    name: str
    detail: str
    estimate: TokenEstimate

    def as_payload(self) -> dict[str, Any]:
        return {"step": self.name, "detail": self.detail, **self.estimate.as_payload()}


@dataclass(slots=True)
class BudgetOutcome:
    """Context and history selected for the turn, plus the steps taken to get there."""

    budget: int
    context: ContextPack
    level: ContextLevel
    history: list[ChatMessage]
    estimate: TokenEstimate
    steps: list[BudgetStep] = field(default_factory=list)
    compaction: CompactionResult | None = None

    @property
    def within_budget(self) -> bool:
        return self.estimate.total <= self.budget

    @property
    def memory(self) -> MemoryState | None:
        return self.compaction.memory if self.compaction is not None else None


class ContextBudgetExceeded(RuntimeError):
    """Raised when the degradation ladder cannot bring the request under the ceiling."""

    def __init__(self, outcome: BudgetOutcome):
        super().__init__(
            f"Context budget exceeded: {outcome.estimate.total} estimated tokens > {outcome.budget}"
        )
        self.outcome = outcome


@dataclass(slots=True)
class BudgetManager:
    """Applies the degradation ladder, re-estimating after every step.

    Ladder: selection-focused context, memory compaction (only when history is long enough),
    minimal context, then dropping the oldest messages. Context never re-expands.
    """

    driver: DocumentDriver
    budget: int
    tools: Sequence[ToolSpec] = ()
    system_prompt: str = SYSTEM_PROMPT
    compactor: Compactor | None = None
    on_step: StepListener | None = None
    telemetry_emitter: Callable[[str, Mapping[str, Any]], Any] | None = field(
        default_factory=lambda: getattr(telemetry_service, "emit", None)
    )

    def estimate(self, context: ContextPack, history: Sequence[ChatMessage], memory_summary: str | None) -> TokenEstimate:
        return estimate_request_tokens(
            system_prompt=self.system_prompt,
            messages=history,
            tools=self.tools,
            memory_summary=memory_summary,
            context_json=serialize_workbook_context(context),
        )

    async def fit(
        self,
        history: Sequence[ChatMessage],
        *,
        memory_summary: str | None = None,
        raise_on_reject: bool = True,
    ) -> BudgetOutcome:
        level: ContextLevel = "full"
        context = await build_workbook_context(self.driver, level)
        messages = list(history)
        outcome = BudgetOutcome(
            budget=self.budget,
            context=context,
            level=level,
            history=messages,
            estimate=self.estimate(context, messages, memory_summary),
        )

        if not outcome.within_budget:
            outcome.level = "selection_only"
            outcome.context = await build_workbook_context(self.driver, outcome.level)
            self._apply(
                outcome,
                "selection_only",
                "Budget pressure detected; trimmed workbook context to selection focus.",
                memory_summary,
            )

        if not outcome.within_budget and len(outcome.history) > COMPACTION_MIN_HISTORY and self.compactor:
            compaction = await self.compactor(outcome.history)
            outcome.compaction = compaction
            outcome.history = [message for message in compaction.messages if message.role != "system"]
            memory_summary = compaction.memory.summary or memory_summary
            self._apply(outcome, "compaction", "Auto-compaction applied to older turns.", memory_summary)

        if not outcome.within_budget:
            outcome.level = "minimal"
            outcome.context = await build_workbook_context(self.driver, outcome.level)
            self._apply(outcome, "minimal", "Dropped non-essential workbook map fields.", memory_summary)

        while not outcome.within_budget and len(outcome.history) > DROP_MIN_HISTORY:
            dropped = outcome.history.pop(0)
            self._apply(outcome, "drop_oldest", f"Dropped oldest {dropped.role} message.", memory_summary)

        if not outcome.within_budget:
            LOGGER.warning(
                "Request exceeds token budget after all reductions (%s > %s)",
                outcome.estimate.total,
                self.budget,
            )
            if raise_on_reject:
                raise ContextBudgetExceeded(outcome)
        return outcome

    def _apply(self, outcome: BudgetOutcome, name: str, detail: str, memory_summary: str | None) -> None:
        outcome.estimate = self.estimate(outcome.context, outcome.history, memory_summary)
        step = BudgetStep(name=name, detail=detail, estimate=outcome.estimate)
        outcome.steps.append(step)
        LOGGER.info("Budget step %s: %s (estimate %s / %s)", name, detail, outcome.estimate.total, self.budget)
        emitter = self.telemetry_emitter
        if callable(emitter):
            emitter("context_budget_step", {"budget": self.budget, **step.as_payload()})
        if self.on_step is not None:
            self.on_step(step)
