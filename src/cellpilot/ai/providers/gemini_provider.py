"""Google Gemini ``generateContent`` adapter."""

from __future__ import annotations

import logging
from typing import Any, Sequence
from urllib.parse import quote

from ..types import FinalResponse, LlmMessage, LlmRequest, LlmResponse, ToolCall, ToolCallResponse
from ..utils.tokens import estimate_tokens
from .base import (
    DEFAULT_TEMPERATURE,
    NATIVE_TOOL_CALL_TOKENS,
    ProviderAdapter,
    fold_tool_message,
    parse_json_tool_call,
    simulate_streaming,
)

LOGGER = logging.getLogger(__name__)

__all__ = ["GEMINI_ENDPOINT", "GeminiProvider", "gemini_endpoint"]

GEMINI_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models"


def gemini_endpoint(model: str, api_key: str | None) -> str:
    return f"{GEMINI_ENDPOINT}/{quote(model, safe='')}:generateContent?key={quote(api_key or '', safe='')}"


def _to_gemini_contents(messages: Sequence[LlmMessage]) -> list[dict[str, Any]]:
    contents = []
    for message in messages:
        role = "model" if message.role == "assistant" else "user"
        text = fold_tool_message(message) if message.role == "tool" else message.content
        contents.append({"role": role, "parts": [{"text": text}]})
    return contents


class GeminiProvider(ProviderAdapter):
    provider_id = "gemini"
    display_name = "Gemini"

    def build_payload(self, request: LlmRequest) -> dict[str, Any]:
        messages = list(request.messages)
        tools = []
        if request.tools:
            tools.append({"functionDeclarations": [tool.to_gemini_declaration() for tool in request.tools]})
        return {
            "systemInstruction": {"parts": [{"text": messages[0].content if messages else ""}]},
            "contents": _to_gemini_contents(messages[1:]),
            "tools": tools,
            "toolConfig": {"functionCallingConfig": {"mode": "AUTO"}},
            "generationConfig": {
                "maxOutputTokens": request.max_output_tokens,
                "temperature": DEFAULT_TEMPERATURE if request.temperature is None else request.temperature,
            },
        }

    async def create_completion(self, request: LlmRequest) -> LlmResponse:
        self._require_credentials(request)
        payload = self.build_payload(request)

        async def direct() -> dict[str, Any]:
            return await self._post(
                gemini_endpoint(request.model, request.api_key),
                payload,
                error_prefix=self.display_name,
            )

        data = await self._send(request, payload, direct)
        candidates = data.get("candidates") or [{}]
        parts = [part for part in ((candidates[0] or {}).get("content") or {}).get("parts") or [] if isinstance(part, dict)]

        function_call = next((part["functionCall"] for part in parts if part.get("functionCall")), None)
        if function_call and function_call.get("name"):
            args = function_call.get("args")
            return ToolCallResponse(
                call=ToolCall(
                    name=str(function_call["name"]),
                    args=args if isinstance(args, dict) else {},
                    reason="Model requested a tool call",
                ),
                estimated_output_tokens=NATIVE_TOOL_CALL_TOKENS,
            )

        text = "\n".join(str(part.get("text") or "") for part in parts).strip()
        fallback = parse_json_tool_call(text, request.tool_names)
        if fallback is not None:
            return fallback

        await simulate_streaming(text, request.on_text_delta)
        return FinalResponse(text=text, estimated_output_tokens=estimate_tokens(text))
