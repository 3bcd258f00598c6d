"""Test doubles shared across test modules."""

from __future__ import annotations

from typing import Any, Iterable, Sequence

from cellpilot.ai.providers.base import ProviderAdapter, iter_text_chunks
from cellpilot.ai.types import FinalResponse, LlmRequest, LlmResponse, ToolCall, ToolCallResponse


def final(text: str, tokens: int = 10) -> FinalResponse:
    return FinalResponse(text=text, estimated_output_tokens=tokens)


def tool_call(name: str, args: dict[str, Any] | None = None, reason: str = "because") -> ToolCallResponse:
    return ToolCallResponse(call=ToolCall(name=name, args=args or {}, reason=reason), estimated_output_tokens=50)


class ScriptedAdapter(ProviderAdapter):
    """Returns queued responses (or raises queued exceptions) in order and records every request."""

    provider_id = "gemini"
    display_name = "Gemini"

    def __init__(self, responses: Iterable[LlmResponse | BaseException] = (), *, repeat_last: bool = False) -> None:
        super().__init__()
        self._responses = list(responses)
        self._repeat_last = repeat_last
        self.requests: list[LlmRequest] = []

    async def create_completion(self, request: LlmRequest) -> LlmResponse:
        self.requests.append(request)
        if not self._responses:
            raise AssertionError("ScriptedAdapter ran out of responses")
        item = self._responses[0] if self._repeat_last and len(self._responses) == 1 else self._responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, FinalResponse) and request.on_text_delta is not None:
            for chunk in iter_text_chunks(item.text):
                request.on_text_delta(chunk)
        return item


def message_texts(request: LlmRequest) -> Sequence[str]:
    return [message.content for message in request.messages]
