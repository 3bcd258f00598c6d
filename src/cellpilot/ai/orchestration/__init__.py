"""Turn orchestration: context budgeting, memory compaction, the change ledger and the agent loop."""

from .budget_manager import BudgetManager, BudgetOutcome, BudgetStep, ContextBudgetExceeded
from .context_pack import CONTEXT_LEVELS, ContextLevel, build_workbook_context, serialize_workbook_context
from .ledger import ChangeLedger, ChangeLedgerError
from .memory import CompactionResult, compact_conversation
from .runner import AgentRunner, ApprovalGate, ApprovalRequest, RunnerConfig

__all__ = [
    "AgentRunner",
    "ApprovalGate",
    "ApprovalRequest",
    "BudgetManager",
    "BudgetOutcome",
    "BudgetStep",
    "CONTEXT_LEVELS",
    "ChangeLedger",
    "ChangeLedgerError",
    "CompactionResult",
    "ContextBudgetExceeded",
    "ContextLevel",
    "RunnerConfig",
    "build_workbook_context",
    "compact_conversation",
    "serialize_workbook_context",
]
