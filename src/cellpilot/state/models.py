"""Conversation and turn records held by the session store."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from ..utils.citations import Citation

__all__ = [
    "MessageRole",
    "StepStatus",
    "TimelineStepId",
    "ToolCardStatus",
    "TIMELINE_STEPS",
    "ChatMessage",
    "MemoryState",
    "TimelineStep",
    "ToolCallEntry",
    "ToolCard",
    "TurnRecord",
    "new_id",
    "utc_now",
]

MessageRole = Literal["system", "user", "assistant", "tool", "memory"]
StepStatus = Literal["pending", "running", "success", "error"]
TimelineStepId = Literal["understanding", "context", "planning", "execution", "summary"]
ToolCardStatus = Literal["pending", "running", "success", "error", "cancelled"]

TIMELINE_STEPS: tuple[tuple[TimelineStepId, str], ...] = (
    ("understanding", "Understanding your request"),
    ("context", "Gathering Excel context"),
    ("planning", "Planning actions"),
    ("execution", "Executing tools"),
    ("summary", "Summarizing results"),
)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ChatMessage:
    """One entry of the conversation.

    ``content`` is only rewritten while a streaming entry is being finalized.
    """

    role: MessageRole
    content: str
    id: str = field(default_factory=lambda: new_id("msg"))
    created_at: datetime = field(default_factory=utc_now)
    citations: list[Citation] = field(default_factory=list)
    streaming: bool = False
    tool_name: str | None = None
    tool_status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "createdAt": self.created_at.isoformat(),
        }
        if self.citations:
            payload["citations"] = [citation.to_dict() for citation in self.citations]
        if self.streaming:
            payload["streaming"] = True
        if self.tool_name:
            payload["meta"] = {"toolName": self.tool_name, "toolStatus": self.tool_status}
        return payload


@dataclass(slots=True)
class TimelineStep:
    id: TimelineStepId
    label: str
    status: StepStatus = "pending"
    details: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ToolCard:
    """Activity-feed entry for one tool call."""

    tool_name: str
    reason: str = ""
    target_ranges: list[str] = field(default_factory=list)
    args_preview: str = ""
    result_preview: str = ""
    status: ToolCardStatus = "pending"
    id: str = field(default_factory=lambda: new_id("tool"))
    started_at: float | None = None
    ended_at: float | None = None
    duration_ms: float | None = None
    error: str | None = None


@dataclass(slots=True, frozen=True)
class ToolCallEntry:
    name: str
    args: str
    status: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "args": self.args, "status": self.status}


@dataclass(slots=True)
class TurnRecord:
    """Summary of one completed turn, kept newest-first by the store."""

    id: str
    prompt: str
    provider: str
    model: str
    estimated_input_tokens: int = 0
    estimated_output_tokens: int = 0
    tool_calls: list[ToolCallEntry] = field(default_factory=list)
    edited_ranges: list[str] = field(default_factory=list)
    summary: str = ""
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "prompt": self.prompt,
            "provider": self.provider,
            "model": self.model,
            "estimatedInputTokens": self.estimated_input_tokens,
            "estimatedOutputTokens": self.estimated_output_tokens,
            "toolCalls": [entry.to_dict() for entry in self.tool_calls],
            "editedRanges": list(self.edited_ranges),
            "summary": self.summary,
        }


@dataclass(slots=True, frozen=True)
class MemoryState:
    """Rolling conversation summary; replaced wholesale, never patched."""

    summary: str
    source_message_ids: tuple[str, ...] = ()
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "sourceMessageIds": list(self.source_message_ids),
            "updatedAt": self.updated_at.isoformat(),
        }
