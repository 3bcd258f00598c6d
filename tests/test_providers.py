from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any

import httpx
import pytest

from cellpilot.ai.providers import (
    AnthropicProvider,
    GeminiProvider,
    OpenAIProvider,
    ProviderError,
    ProviderRequestError,
    get_provider_adapter,
)
from cellpilot.ai.providers import openai_provider
from cellpilot.ai.providers.base import fold_tool_message, iter_text_chunks, parse_json_tool_call
from cellpilot.ai.providers.openai_provider import is_reasoning_model, to_openai_messages
from cellpilot.ai.tools.catalog import build_default_registry
from cellpilot.ai.types import FinalResponse, LlmMessage, LlmRequest, ToolCallResponse

READ_RANGE = build_default_registry().get("read_range")


def _request(provider: str, model: str, **overrides: Any) -> LlmRequest:
    fields: dict[str, Any] = {
        "provider": provider,
        "model": model,
        "max_output_tokens": 512,
        "messages": [
            LlmMessage.system("You are a spreadsheet agent."),
            LlmMessage.user("Sum column B"),
            LlmMessage.tool('{"status": "success"}', name="read_range"),
        ],
        "tools": [READ_RANGE],
        "api_key": "secret",
    }
    fields.update(overrides)
    return LlmRequest(**fields)


class _FakeCompletion:
    def __init__(self, payload: dict[str, Any]) -> None:
        self._payload = payload

    def model_dump(self) -> dict[str, Any]:
        return self._payload


def _fake_openai(payload: dict[str, Any], calls: list[dict[str, Any]]) -> SimpleNamespace:
    async def create(**kwargs: Any) -> _FakeCompletion:
        calls.append(kwargs)
        return _FakeCompletion(payload)

    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_openai_native_tool_call() -> None:
    calls: list[dict[str, Any]] = []
    payload = {
        "choices": [
            {
                "message": {
                    "content": None,
                    "tool_calls": [{"function": {"name": "read_range", "arguments": '{"address": "A1:B2"}'}}],
                }
            }
        ]
    }
    adapter = OpenAIProvider(client=_fake_openai(payload, calls))

    response = await adapter.create_completion(_request("openai", "gpt-4o"))

    assert isinstance(response, ToolCallResponse)
    assert response.call.name == "read_range"
    assert response.call.args == {"address": "A1:B2"}
    assert response.estimated_output_tokens == 50
    sent = calls[0]
    assert sent["temperature"] == 0.2
    assert "reasoning_effort" not in sent
    assert sent["messages"][-1] == {"role": "user", "content": 'Tool result (read_range):\n{"status": "success"}'}
    assert sent["tools"][0]["function"]["name"] == "read_range"


@pytest.mark.asyncio
async def test_openai_reasoning_models_swap_temperature() -> None:
    calls: list[dict[str, Any]] = []
    payload = {"choices": [{"message": {"content": "Done."}}]}
    adapter = OpenAIProvider(client=_fake_openai(payload, calls))

    response = await adapter.create_completion(_request("openai", "gpt-5-mini"))

    assert response == FinalResponse(text="Done.", estimated_output_tokens=2)
    assert calls[0]["reasoning_effort"] == "medium"
    assert "temperature" not in calls[0]
    assert calls[0]["max_completion_tokens"] == 512


@pytest.mark.asyncio
async def test_openai_plain_json_fallback() -> None:
    text = json.dumps({"tool": "read_range", "args": {"address": "C1"}, "reason": "check"})
    adapter = OpenAIProvider(client=_fake_openai({"choices": [{"message": {"content": text}}]}, []))

    response = await adapter.create_completion(_request("openai", "gpt-4o"))

    assert isinstance(response, ToolCallResponse)
    assert response.call.args == {"address": "C1"}
    assert response.call.reason == "check"


@pytest.mark.asyncio
async def test_openai_sdk_client_is_reused_per_key_and_closed(monkeypatch: pytest.MonkeyPatch) -> None:
    built: list[SimpleNamespace] = []

    def build_client(**kwargs: Any) -> SimpleNamespace:
        async def create(**_: Any) -> _FakeCompletion:
            return _FakeCompletion({"choices": [{"message": {"content": "Done"}}]})

        async def close() -> None:
            client.closed = True

        client = SimpleNamespace(
            kwargs=kwargs,
            closed=False,
            chat=SimpleNamespace(completions=SimpleNamespace(create=create)),
            close=close,
        )
        built.append(client)
        return client

    monkeypatch.setattr(openai_provider, "AsyncOpenAI", build_client)
    adapter = OpenAIProvider(timeout=5.0)

    await adapter.create_completion(_request("openai", "gpt-4o"))
    await adapter.create_completion(_request("openai", "gpt-4o"))
    assert len(built) == 1
    assert built[0].kwargs == {"api_key": "secret", "max_retries": 0, "timeout": 5.0}

    await adapter.create_completion(_request("openai", "gpt-4o", api_key="rotated"))
    assert len(built) == 2
    assert built[0].closed and not built[1].closed

    await adapter.aclose()
    assert built[1].closed


def test_openai_message_conversion() -> None:
    converted = to_openai_messages([LlmMessage.assistant("hi"), LlmMessage.tool("{}")])

    assert converted == [{"role": "assistant", "content": "hi"}, {"role": "user", "content": "Tool result:\n{}"}]
    assert is_reasoning_model("GPT-5")
    assert not is_reasoning_model("gpt-4.1")


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_anthropic_tool_use_block() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "content": [
                    {"type": "text", "text": "Let me look."},
                    {"type": "tool_use", "name": "read_range", "input": {"address": "A1"}},
                ]
            },
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = AnthropicProvider(http_client=client)
        response = await adapter.create_completion(_request("anthropic", "claude-sonnet"))

    assert isinstance(response, ToolCallResponse)
    assert response.call.args == {"address": "A1"}
    request = seen[0]
    assert str(request.url) == "https://api.anthropic.com/v1/messages"
    assert request.headers["x-api-key"] == "secret"
    assert request.headers["anthropic-version"] == "2023-06-01"
    body = json.loads(request.content)
    assert body["system"] == "You are a spreadsheet agent."
    assert [message["role"] for message in body["messages"]] == ["user", "user"]
    assert body["tools"][0]["input_schema"]["required"] == ["address"]


@pytest.mark.asyncio
async def test_anthropic_http_error_carries_status_and_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text="invalid x-api-key")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = AnthropicProvider(http_client=client)
        with pytest.raises(ProviderRequestError) as excinfo:
            await adapter.create_completion(_request("anthropic", "claude-sonnet"))

    assert str(excinfo.value) == "Anthropic request failed (401): invalid x-api-key"
    assert excinfo.value.status_code == 401


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_gemini_function_call_and_payload() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"candidates": [{"content": {"parts": [{"functionCall": {"name": "read_range", "args": {"address": "B4"}}}]}}]},
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = GeminiProvider(http_client=client)
        response = await adapter.create_completion(_request("gemini", "gemini-2.5-flash"))

    assert isinstance(response, ToolCallResponse)
    assert response.call.name == "read_range"
    request = seen[0]
    assert request.url.path.endswith("/models/gemini-2.5-flash:generateContent")
    assert request.url.params["key"] == "secret"
    body = json.loads(request.content)
    assert body["systemInstruction"]["parts"][0]["text"] == "You are a spreadsheet agent."
    declaration = body["tools"][0]["functionDeclarations"][0]
    assert "additionalProperties" not in declaration["parameters"]
    assert body["generationConfig"] == {"maxOutputTokens": 512, "temperature": 0.2}


@pytest.mark.asyncio
async def test_gemini_text_is_streamed_to_callback() -> None:
    deltas: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "Total is 15."}]}}]})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = GeminiProvider(http_client=client)
        response = await adapter.create_completion(
            _request("gemini", "gemini-2.5-flash", on_text_delta=deltas.append)
        )

    assert isinstance(response, FinalResponse)
    assert response.text == "Total is 15."
    assert "".join(deltas) == "Total is 15."


# ---------------------------------------------------------------------------
# Shared behaviour
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_proxy_wraps_payload_with_provider() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "ok"}]}}]})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = GeminiProvider(http_client=client)
        response = await adapter.create_completion(
            _request(
                "gemini",
                "gemini-2.5-flash",
                api_key=None,
                proxy_enabled=True,
                proxy_base_url="https://proxy.test/",
            )
        )

    assert response.text == "ok"
    assert str(seen[0].url) == "https://proxy.test/chat"
    envelope = json.loads(seen[0].content)
    assert envelope["provider"] == "gemini"
    assert "contents" in envelope["payload"]


@pytest.mark.asyncio
async def test_missing_api_key_fails_before_sending() -> None:
    adapter = GeminiProvider()

    with pytest.raises(ProviderError, match="Gemini API key is missing"):
        await adapter.create_completion(_request("gemini", "gemini-2.5-flash", api_key=""))


def test_json_fallback_requires_declared_tool_and_args() -> None:
    names = frozenset({"read_range"})

    assert parse_json_tool_call('{"tool": "read_range", "args": {}}', names) is not None
    assert parse_json_tool_call('{"tool": "drop", "args": {}}', names) is None
    assert parse_json_tool_call('{"tool": "read_range"}', names) is None
    assert parse_json_tool_call("not json", names) is None
    assert parse_json_tool_call("{broken", names) is None

    parsed = parse_json_tool_call('{"tool": "read_range", "args": {"address": "A1"}}', names)
    assert parsed.call.reason == "Tool call requested by model"


def test_fold_tool_message() -> None:
    assert fold_tool_message(LlmMessage.tool("{}", name="getTable")) == "Tool result (getTable):\n{}"


def test_iter_text_chunks_rebuilds_text() -> None:
    text = "The quarterly totals were recalculated and the sums in row four now match."

    chunks = list(iter_text_chunks(text))

    assert len(chunks) > 1
    assert "".join(chunks) == text
    assert all(len(chunk) <= 21 for chunk in chunks)
    assert list(iter_text_chunks("")) == []


@pytest.mark.parametrize(
    "text",
    [
        "See https://example.com/reports/quarterly/2024/summary for details.",
        "First paragraph.\n\nSecond paragraph after a blank line.",
        "Supercalifragilisticexpialidocious",
        "\n\n",
    ],
)
def test_iter_text_chunks_keeps_long_words_and_blank_lines(text: str) -> None:
    chunks = list(iter_text_chunks(text))

    assert chunks
    assert all(chunks)
    assert "".join(chunks) == text


def test_factory_returns_adapter_per_provider() -> None:
    assert isinstance(get_provider_adapter("gemini"), GeminiProvider)
    assert isinstance(get_provider_adapter("openai"), OpenAIProvider)
    assert isinstance(get_provider_adapter("anthropic"), AnthropicProvider)
    with pytest.raises(ProviderError):
        get_provider_adapter("mistral")
