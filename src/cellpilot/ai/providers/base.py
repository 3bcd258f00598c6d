"""Shared plumbing for provider adapters."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Iterator, Mapping, Sequence, TypeVar

import httpx

from ..utils.tokens import estimate_tokens
from ..types import (
    LlmMessage,
    LlmRequest,
    LlmResponse,
    ProviderId,
    TextDeltaCallback,
    ToolCall,
    ToolCallResponse,
)

LOGGER = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_TEMPERATURE",
    "NATIVE_TOOL_CALL_TOKENS",
    "STREAM_CHUNK_DELAY",
    "ProviderError",
    "ProviderRequestError",
    "ProviderAdapter",
    "fold_tool_message",
    "iter_text_chunks",
    "maybe_proxy_request",
    "parse_json_tool_call",
    "post_json",
    "simulate_streaming",
]

DEFAULT_TEMPERATURE = 0.2
NATIVE_TOOL_CALL_TOKENS = 50
STREAM_CHUNK_DELAY = 0.02
MAX_ERROR_BODY_CHARS = 500

_CHUNK_PATTERN = re.compile(r".{1,20}(\s|$)")

T = TypeVar("T")


class ProviderError(RuntimeError):
    """Raised when an adapter cannot build or send a request."""


class ProviderRequestError(ProviderError):
    """Raised when a backend (or the proxy) answers with a non-success status."""

    def __init__(self, message: str, *, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ProviderAdapter(ABC):
    """One backend model family behind the uniform completion contract."""

    provider_id: ProviderId
    display_name: str

    def __init__(self, *, http_client: httpx.AsyncClient | None = None, timeout: float = 60.0) -> None:
        self._http_client = http_client
        self._timeout = timeout

    @abstractmethod
    async def create_completion(self, request: LlmRequest) -> LlmResponse:
        """Send ``request`` and normalize the backend answer."""

    async def aclose(self) -> None:
        """Release network resources owned by the adapter."""

    def _require_credentials(self, request: LlmRequest) -> None:
        if not request.api_key and not request.proxy_enabled:
            raise ProviderError(f"{self.display_name} API key is missing. Add it in Settings.")

    async def _post(
        self,
        url: str,
        payload: Mapping[str, Any],
        *,
        headers: Mapping[str, str] | None = None,
        error_prefix: str | None = None,
    ) -> dict[str, Any]:
        return await post_json(
            url,
            payload,
            headers=headers,
            client=self._http_client,
            timeout=self._timeout,
            error_prefix=error_prefix,
        )

    async def _send(
        self,
        request: LlmRequest,
        payload: Mapping[str, Any],
        direct: Callable[[], Awaitable[dict[str, Any]]],
    ) -> dict[str, Any]:
        return await maybe_proxy_request(
            proxy_enabled=request.proxy_enabled,
            proxy_base_url=request.proxy_base_url,
            provider=self.provider_id,
            payload=payload,
            direct_request=direct,
            client=self._http_client,
            timeout=self._timeout,
        )


# -----------------------------------------------------------------------------
# Message translation
# -----------------------------------------------------------------------------


def fold_tool_message(message: LlmMessage) -> str:
    """Render a tool-result message as plain user text."""

    label = f"Tool result ({message.name})" if message.name else "Tool result"
    return f"{label}:\n{message.content}"


def parse_json_tool_call(text: str, tool_names: Sequence[str] | frozenset[str]) -> ToolCallResponse | None:
    """Secondary parse path: treat a bare JSON object ``{"tool", "args", "reason"}`` as a tool call.

    Only attempted when the structured channel returned nothing. Returns ``None`` unless the object
    names a declared tool and carries an ``args`` object.
    """

    trimmed = (text or "").strip()
    if not trimmed.startswith("{") or not trimmed.endswith("}"):
        return None
    try:
        parsed = json.loads(trimmed)
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None
    name = parsed.get("tool")
    args = parsed.get("args")
    if not isinstance(name, str) or not isinstance(args, dict):
        return None
    if name not in tool_names:
        return None
    reason = parsed.get("reason")
    LOGGER.info("Parsed tool call %s from plain-text JSON output", name)
    return ToolCallResponse(
        call=ToolCall(
            name=name,
            args=args,
            reason=reason if isinstance(reason, str) and reason else "Tool call requested by model",
        ),
        estimated_output_tokens=estimate_tokens(text),
    )


# -----------------------------------------------------------------------------
# Transport
# -----------------------------------------------------------------------------


async def post_json(
    url: str,
    payload: Mapping[str, Any],
    *,
    headers: Mapping[str, str] | None = None,
    client: httpx.AsyncClient | None = None,
    timeout: float = 60.0,
    error_prefix: str | None = None,
) -> dict[str, Any]:
    """POST ``payload`` as JSON and decode the JSON answer.

    Non-success statuses raise :class:`ProviderRequestError` with the body truncated to 500
    characters. No retries happen here.
    """

    merged_headers = {"Content-Type": "application/json", **dict(headers or {})}
    if client is not None:
        response = await client.post(url, json=dict(payload), headers=merged_headers)
    else:
        async with httpx.AsyncClient(timeout=timeout) as owned:
            response = await owned.post(url, json=dict(payload), headers=merged_headers)

    if not response.is_success:
        body = response.text[:MAX_ERROR_BODY_CHARS]
        if error_prefix:
            message = f"{error_prefix} request failed ({response.status_code}): {body}"
        else:
            message = f"HTTP {response.status_code}: {body}"
        raise ProviderRequestError(message, status_code=response.status_code, body=body)

    data = response.json()
    return data if isinstance(data, dict) else {}


async def maybe_proxy_request(
    *,
    proxy_enabled: bool,
    proxy_base_url: str | None,
    provider: str,
    payload: Mapping[str, Any],
    direct_request: Callable[[], Awaitable[T]],
    client: httpx.AsyncClient | None = None,
    timeout: float = 60.0,
) -> T | dict[str, Any]:
    """Route through ``<proxy>/chat`` when enabled, otherwise run ``direct_request``."""

    proxy_base = (proxy_base_url or "").strip()
    if not proxy_enabled or not proxy_base:
        return await direct_request()

    proxy_url = f"{proxy_base.rstrip('/')}/chat"
    LOGGER.debug("Routing %s request through proxy %s", provider, proxy_url)
    return await post_json(
        proxy_url,
        {"provider": provider, "payload": dict(payload)},
        client=client,
        timeout=timeout,
    )


# -----------------------------------------------------------------------------
# Streaming illusion
# -----------------------------------------------------------------------------


def iter_text_chunks(text: str) -> Iterator[str]:
    """Yield short word-aligned chunks of ``text``; finite and not restartable.

    Text the pattern skips (long words, blank lines) is yielded as its own chunk, so the chunks
    always join back into ``text``.
    """

    position = 0
    for match in _CHUNK_PATTERN.finditer(text):
        if match.start() > position:
            yield text[position : match.start()]
        yield match.group(0)
        position = match.end()
    if position < len(text):
        yield text[position:]


async def simulate_streaming(
    text: str,
    on_delta: TextDeltaCallback | None,
    *,
    delay: float = STREAM_CHUNK_DELAY,
) -> None:
    if on_delta is None:
        return
    for chunk in iter_text_chunks(text):
        on_delta(chunk)
        await asyncio.sleep(delay)
