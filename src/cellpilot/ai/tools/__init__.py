"""Spreadsheet tool catalog, validation, risk assessment and execution."""

from .catalog import EDITING_TOOLS, TOOL_NAMES, TOOL_SPECS, build_default_registry, is_editing_tool, is_risky_tool
from .executor import ToolExecutor
from .registry import DuplicateToolError, InvalidToolSchemaError, ToolNotFoundError, ToolRegistry, ToolRegistryError
from .risk import assess_tool_risk, requires_approval
from .types import ConfirmationRequest, ToolCategory, ToolExecutionResult, ToolSpec
from .validation import ValidationOutcome, validate_tool_call

__all__ = [
    "ConfirmationRequest",
    "DuplicateToolError",
    "EDITING_TOOLS",
    "InvalidToolSchemaError",
    "TOOL_NAMES",
    "TOOL_SPECS",
    "ToolCategory",
    "ToolExecutionResult",
    "ToolExecutor",
    "ToolNotFoundError",
    "ToolRegistry",
    "ToolRegistryError",
    "ToolSpec",
    "ValidationOutcome",
    "assess_tool_risk",
    "build_default_registry",
    "is_editing_tool",
    "is_risky_tool",
    "requires_approval",
    "validate_tool_call",
]
