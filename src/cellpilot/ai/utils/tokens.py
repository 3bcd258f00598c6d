"""Token estimation utilities for budget decisions.

Estimates use a fixed characters-per-token ratio and run on every budget decision.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 6
OUTPUT_TOKEN_RATIO = 0.25


@dataclass(slots=True, frozen=True)
class TokenEstimate:
    """Estimated prompt/response sizes for a single model request."""

    input_tokens: int
    output_tokens: int
    total: int

    def as_payload(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total": self.total,
        }


def estimate_tokens(text: Any) -> int:
    """Estimate the number of tokens in ``text``.

    Returns 0 for ``None``, empty and whitespace-only input, otherwise ``ceil(len / 4)``.
    """
    if text is None:
        return 0
    if not isinstance(text, str):
        text = str(text)
    if not text or text.isspace():
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_payload_tokens(payload: Any) -> int:
    """Estimate the tokens of a JSON-serializable payload such as a tool result."""

    return estimate_tokens(json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str))


def estimate_request_tokens(
    *,
    system_prompt: str,
    messages: Iterable[Any],
    tools: Iterable[Any] = (),
    memory_summary: str | None = None,
    context_json: str | None = None,
) -> TokenEstimate:
    """Sum the prompt pieces of a request and derive the expected response size.

    ``messages`` may hold message objects exposing ``content`` or plain mappings; ``tools`` may
    hold tool specs exposing ``to_schema()`` or plain mappings.
    """

    system_tokens = estimate_tokens(system_prompt)
    memory_tokens = estimate_tokens(memory_summary or "")
    context_tokens = estimate_tokens(context_json or "")
    message_tokens = sum(
        estimate_tokens(_message_content(message)) + MESSAGE_OVERHEAD_TOKENS for message in messages
    )
    tool_tokens = estimate_payload_tokens([_tool_schema(tool) for tool in tools])

    input_tokens = system_tokens + memory_tokens + context_tokens + message_tokens + tool_tokens
    output_tokens = math.ceil(input_tokens * OUTPUT_TOKEN_RATIO)
    return TokenEstimate(input_tokens=input_tokens, output_tokens=output_tokens, total=input_tokens + output_tokens)


def clamp_budget(value: Any, minimum: int, maximum: int) -> int:
    """Clamp a user supplied budget into ``[minimum, maximum]``."""

    try:
        number = float(value)
    except (TypeError, ValueError):
        return minimum
    if not math.isfinite(number):
        return minimum
    return int(min(maximum, max(minimum, round(number))))


def _message_content(message: Any) -> str:
    if isinstance(message, Mapping):
        return str(message.get("content") or "")
    return str(getattr(message, "content", "") or "")


def _tool_schema(tool: Any) -> Any:
    to_schema = getattr(tool, "to_schema", None)
    if callable(to_schema):
        return to_schema()
    return tool


__all__ = [
    "CHARS_PER_TOKEN",
    "MESSAGE_OVERHEAD_TOKENS",
    "OUTPUT_TOKEN_RATIO",
    "TokenEstimate",
    "clamp_budget",
    "estimate_payload_tokens",
    "estimate_request_tokens",
    "estimate_tokens",
]
