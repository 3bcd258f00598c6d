"""Provider-neutral request/response types shared by adapters and the runner."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Literal, Mapping, Sequence

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from .tools.types import ToolSpec

__all__ = [
    "ProviderId",
    "PROVIDER_IDS",
    "LlmRole",
    "LlmMessage",
    "LlmRequest",
    "ToolCall",
    "FinalResponse",
    "ToolCallResponse",
    "LlmResponse",
    "TextDeltaCallback",
]

ProviderId = Literal["gemini", "openai", "anthropic"]
PROVIDER_IDS: tuple[ProviderId, ...] = ("gemini", "openai", "anthropic")

LlmRole = Literal["system", "user", "assistant", "tool"]

TextDeltaCallback = Callable[[str], None]


@dataclass(slots=True, frozen=True)
class LlmMessage:
    """A single message as sent to a provider adapter."""

    role: LlmRole
    content: str
    name: str | None = None

    @classmethod
    def system(cls, content: str) -> "LlmMessage":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "LlmMessage":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str) -> "LlmMessage":
        return cls(role="assistant", content=content)

    @classmethod
    def tool(cls, content: str, *, name: str | None = None) -> "LlmMessage":
        return cls(role="tool", content=content, name=name)


@dataclass(slots=True)
class LlmRequest:
    """Everything an adapter needs for one completion call."""

    provider: ProviderId
    model: str
    max_output_tokens: int
    messages: Sequence[LlmMessage]
    tools: Sequence["ToolSpec"] = ()
    api_key: str | None = None
    proxy_base_url: str | None = None
    proxy_enabled: bool = False
    temperature: float | None = None
    on_text_delta: TextDeltaCallback | None = None

    @property
    def tool_names(self) -> frozenset[str]:
        return frozenset(tool.name for tool in self.tools)


@dataclass(slots=True, frozen=True)
class ToolCall:
    """A tool invocation proposed by the model."""

    name: str
    args: Mapping[str, Any] = field(default_factory=dict)
    reason: str = ""


@dataclass(slots=True, frozen=True)
class FinalResponse:
    """The model answered with plain text."""

    kind: ClassVar[Literal["final"]] = "final"

    text: str
    estimated_output_tokens: int = 0


@dataclass(slots=True, frozen=True)
class ToolCallResponse:
    """The model asked for a tool invocation."""

    kind: ClassVar[Literal["tool_call"]] = "tool_call"

    call: ToolCall
    estimated_output_tokens: int = 0


LlmResponse = FinalResponse | ToolCallResponse
