"""Anthropic messages API adapter."""

from __future__ import annotations

import logging
from typing import Any, Sequence

from ..types import FinalResponse, LlmMessage, LlmRequest, LlmResponse, ToolCall, ToolCallResponse
from ..utils.tokens import estimate_tokens
from .base import (
    NATIVE_TOOL_CALL_TOKENS,
    ProviderAdapter,
    fold_tool_message,
    parse_json_tool_call,
    simulate_streaming,
)

LOGGER = logging.getLogger(__name__)

__all__ = ["ANTHROPIC_ENDPOINT", "ANTHROPIC_VERSION", "AnthropicProvider"]

ANTHROPIC_ENDPOINT = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"


def _to_anthropic_messages(messages: Sequence[LlmMessage]) -> list[dict[str, str]]:
    converted = []
    for message in messages:
        role = "assistant" if message.role == "assistant" else "user"
        content = fold_tool_message(message) if message.role == "tool" else message.content
        converted.append({"role": role, "content": content})
    return converted


class AnthropicProvider(ProviderAdapter):
    provider_id = "anthropic"
    display_name = "Anthropic"

    def build_payload(self, request: LlmRequest) -> dict[str, Any]:
        messages = list(request.messages)
        payload: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_output_tokens,
            "system": messages[0].content if messages else "",
            "messages": _to_anthropic_messages(messages[1:]),
        }
        if request.tools:
            payload["tools"] = [tool.to_anthropic_tool() for tool in request.tools]
        return payload

    async def create_completion(self, request: LlmRequest) -> LlmResponse:
        self._require_credentials(request)
        payload = self.build_payload(request)

        async def direct() -> dict[str, Any]:
            return await self._post(
                ANTHROPIC_ENDPOINT,
                payload,
                headers={"x-api-key": request.api_key or "", "anthropic-version": ANTHROPIC_VERSION},
                error_prefix=self.display_name,
            )

        data = await self._send(request, payload, direct)
        blocks = [block for block in data.get("content") or [] if isinstance(block, dict)]

        tool_use = next((block for block in blocks if block.get("type") == "tool_use"), None)
        if tool_use is not None:
            args = tool_use.get("input")
            return ToolCallResponse(
                call=ToolCall(
                    name=str(tool_use.get("name") or ""),
                    args=args if isinstance(args, dict) else {},
                    reason="Model requested a tool call",
                ),
                estimated_output_tokens=NATIVE_TOOL_CALL_TOKENS,
            )

        text = "\n".join(str(block.get("text") or "") for block in blocks if block.get("type") == "text").strip()
        fallback = parse_json_tool_call(text, request.tool_names)
        if fallback is not None:
            return fallback

        await simulate_streaming(text, request.on_text_delta)
        return FinalResponse(text=text, estimated_output_tokens=estimate_tokens(text))
