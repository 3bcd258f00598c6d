"""Provider adapters normalizing remote chat-completion protocols."""

from __future__ import annotations

from typing import Any

import httpx
from openai import AsyncOpenAI

from .anthropic_provider import AnthropicProvider
from .base import ProviderAdapter, ProviderError, ProviderRequestError, parse_json_tool_call
from .gemini_provider import GeminiProvider
from .openai_provider import OpenAIProvider

__all__ = [
    "AnthropicProvider",
    "GeminiProvider",
    "OpenAIProvider",
    "ProviderAdapter",
    "ProviderError",
    "ProviderRequestError",
    "get_provider_adapter",
    "parse_json_tool_call",
]


def get_provider_adapter(
    provider_id: str,
    *,
    http_client: httpx.AsyncClient | None = None,
    openai_client: AsyncOpenAI | None = None,
    timeout: float = 60.0,
) -> ProviderAdapter:
    """Return the adapter for ``provider_id``."""

    kwargs: dict[str, Any] = {"http_client": http_client, "timeout": timeout}
    if provider_id == "gemini":
        return GeminiProvider(**kwargs)
    if provider_id == "openai":
        return OpenAIProvider(client=openai_client, **kwargs)
    if provider_id == "anthropic":
        return AnthropicProvider(**kwargs)
    raise ProviderError(f"Unknown provider {provider_id!r}")
