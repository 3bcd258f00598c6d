"""OpenAI chat-completions adapter."""

from __future__ import annotations

import json
import logging
from typing import Any, Sequence

import httpx
from openai import APIStatusError, AsyncOpenAI

from ..types import FinalResponse, LlmMessage, LlmRequest, LlmResponse, ToolCall, ToolCallResponse
from ..utils.tokens import estimate_tokens
from .base import (
    DEFAULT_TEMPERATURE,
    MAX_ERROR_BODY_CHARS,
    NATIVE_TOOL_CALL_TOKENS,
    ProviderAdapter,
    ProviderRequestError,
    fold_tool_message,
    parse_json_tool_call,
    simulate_streaming,
)

LOGGER = logging.getLogger(__name__)

__all__ = ["OpenAIProvider", "is_reasoning_model", "to_openai_messages"]

REASONING_EFFORT = "medium"


def is_reasoning_model(model: str) -> bool:
    """Models that reject ``temperature`` and take ``reasoning_effort`` instead."""
    return model.lower().startswith("gpt-5")


def to_openai_messages(messages: Sequence[LlmMessage]) -> list[dict[str, str]]:
    converted: list[dict[str, str]] = []
    for message in messages:
        if message.role in ("system", "assistant"):
            converted.append({"role": message.role, "content": message.content})
        elif message.role == "tool":
            converted.append({"role": "user", "content": fold_tool_message(message)})
        else:
            converted.append({"role": "user", "content": message.content})
    return converted


def _message_text(content: Any) -> str:
    if not content:
        return ""
    if isinstance(content, str):
        return content.strip()
    parts = [str(part.get("text") or "") for part in content if isinstance(part, dict)]
    return "\n".join(parts).strip()


class OpenAIProvider(ProviderAdapter):
    provider_id = "openai"
    display_name = "OpenAI"

    def __init__(
        self,
        *,
        client: AsyncOpenAI | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 60.0,
    ) -> None:
        super().__init__(http_client=http_client, timeout=timeout)
        self._client = client
        self._owned_client: AsyncOpenAI | None = None
        self._owned_key: str | None = None

    async def aclose(self) -> None:
        """Close the SDK client this adapter built; injected clients belong to the caller."""

        client, self._owned_client, self._owned_key = self._owned_client, None, None
        if client is not None:
            await client.close()

    def build_payload(self, request: LlmRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": to_openai_messages(request.messages),
            "max_completion_tokens": request.max_output_tokens,
        }
        if request.tools:
            payload["tools"] = [tool.to_openai_tool() for tool in request.tools]
        if is_reasoning_model(request.model):
            payload["reasoning_effort"] = REASONING_EFFORT
        else:
            payload["temperature"] = DEFAULT_TEMPERATURE if request.temperature is None else request.temperature
        return payload

    async def create_completion(self, request: LlmRequest) -> LlmResponse:
        self._require_credentials(request)
        payload = self.build_payload(request)

        async def direct() -> dict[str, Any]:
            return await self._create_direct(request, payload)

        data = await self._send(request, payload, direct)
        return await self._parse(data, request)

    async def _create_direct(self, request: LlmRequest, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._client_for(request.api_key)
        try:
            completion = await client.chat.completions.create(**payload)
        except APIStatusError as exc:
            body = (exc.response.text if exc.response is not None else str(exc))[:MAX_ERROR_BODY_CHARS]
            raise ProviderRequestError(
                f"OpenAI request failed ({exc.status_code}): {body}",
                status_code=exc.status_code,
                body=body,
            ) from exc
        dumped = completion.model_dump() if hasattr(completion, "model_dump") else completion
        return dumped if isinstance(dumped, dict) else {}

    async def _client_for(self, api_key: str | None) -> AsyncOpenAI:
        if self._client is not None:
            return self._client
        if self._owned_client is not None and self._owned_key == api_key:
            return self._owned_client
        await self.aclose()
        self._owned_client = AsyncOpenAI(api_key=api_key, max_retries=0, timeout=self._timeout)
        self._owned_key = api_key
        return self._owned_client

    async def _parse(self, data: dict[str, Any], request: LlmRequest) -> LlmResponse:
        choices = data.get("choices") or [{}]
        message = (choices[0] or {}).get("message") or {}
        tool_calls = message.get("tool_calls") or [{}]
        function = (tool_calls[0] or {}).get("function") or {}

        if function.get("name"):
            return ToolCallResponse(
                call=ToolCall(
                    name=str(function["name"]),
                    args=_decode_arguments(function.get("arguments")),
                    reason="Model requested a tool call",
                ),
                estimated_output_tokens=NATIVE_TOOL_CALL_TOKENS,
            )

        text = _message_text(message.get("content"))
        fallback = parse_json_tool_call(text, request.tool_names)
        if fallback is not None:
            return fallback

        await simulate_streaming(text, request.on_text_delta)
        return FinalResponse(text=text, estimated_output_tokens=estimate_tokens(text))


def _decode_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError):
        LOGGER.debug("Discarding undecodable tool arguments: %r", raw)
        return {}
    return decoded if isinstance(decoded, dict) else {}
