"""Tool declarations and execution result containers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Mapping, Sequence

from ...documents.types import RangeChange

__all__ = [
    "ToolCategory",
    "ToolSpec",
    "ConfirmationRequest",
    "ToolStatus",
    "ToolExecutionResult",
]


# -----------------------------------------------------------------------------
# Tool declarations
# -----------------------------------------------------------------------------


class ToolCategory(Enum):
    """Categories of spreadsheet tools."""

    READ = "read"  # Inspect workbook state
    EDIT = "edit"  # Mutate the workbook
    EXTERNAL = "external"  # Leaves the workbook (network)


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Declared shape of a tool the model may call.

    Attributes:
        name: Tool name (identifier).
        description: Human-readable description shown to the model.
        parameters: JSON Schema object describing accepted arguments.
        category: Tool category used by the risk assessor.
    """

    name: str
    description: str
    parameters: Mapping[str, Any]
    category: ToolCategory = ToolCategory.READ

    @property
    def is_write(self) -> bool:
        return self.category is ToolCategory.EDIT

    @property
    def is_external(self) -> bool:
        return self.category is ToolCategory.EXTERNAL

    @property
    def properties(self) -> Mapping[str, Any]:
        return self.parameters.get("properties") or {}

    @property
    def required(self) -> tuple[str, ...]:
        return tuple(self.parameters.get("required") or ())

    @property
    def closed(self) -> bool:
        return self.parameters.get("additionalProperties") is False

    def to_schema(self) -> dict[str, Any]:
        """Provider neutral declaration, also used for token estimation."""
        return {"name": self.name, "description": self.description, "inputSchema": dict(self.parameters)}

    def to_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters),
            },
        }

    def to_anthropic_tool(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "input_schema": dict(self.parameters)}

    def to_gemini_declaration(self) -> dict[str, Any]:
        # Gemini rejects ``additionalProperties`` anywhere in a declaration.
        return {
            "name": self.name,
            "description": self.description,
            "parameters": _strip_additional_properties(self.parameters),
        }


def _strip_additional_properties(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            key: _strip_additional_properties(item)
            for key, item in value.items()
            if key != "additionalProperties"
        }
    if isinstance(value, list):
        return [_strip_additional_properties(item) for item in value]
    return value


# -----------------------------------------------------------------------------
# Execution results
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ConfirmationRequest:
    """Why a tool call needs a human decision before it runs."""

    reason: str
    risky: bool = True
    overwritten_cells: int | None = None
    total_cells: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"reason": self.reason, "risky": self.risky}
        if self.overwritten_cells is not None:
            payload["overwrittenCells"] = self.overwritten_cells
        if self.total_cells is not None:
            payload["totalCells"] = self.total_cells
        return payload


ToolStatus = Literal["success", "error", "needs_confirmation"]


@dataclass(slots=True)
class ToolExecutionResult:
    """Outcome of one tool execution."""

    status: ToolStatus
    summary: str
    data: Any = None
    error: str | None = None
    cited_ranges: Sequence[str] = field(default_factory=list)
    edited_ranges: Sequence[str] = field(default_factory=list)
    changes: Sequence[RangeChange] = field(default_factory=list)
    requires_confirmation: ConfirmationRequest | None = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_model_payload(self) -> dict[str, Any]:
        """Payload echoed back to the model as the tool message."""
        return {
            "status": self.status,
            "summary": self.summary,
            "error": self.error,
            "data": self.data,
            "citedRanges": list(self.cited_ranges),
            "editedRanges": list(self.edited_ranges),
        }
