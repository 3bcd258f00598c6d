"""Tests for :mod:`cellpilot.ai.utils.tokens`."""

from __future__ import annotations

import math

import pytest

from cellpilot.ai.tools.catalog import TOOL_SPECS
from cellpilot.ai.types import LlmMessage
from cellpilot.ai.utils.tokens import (
    MESSAGE_OVERHEAD_TOKENS,
    clamp_budget,
    estimate_payload_tokens,
    estimate_request_tokens,
    estimate_tokens,
)


@pytest.mark.parametrize("text", ["", "   ", "\n\t", None])
def test_estimate_tokens_is_zero_for_blank_input(text) -> None:
    assert estimate_tokens(text) == 0


def test_estimate_tokens_uses_four_characters_per_token() -> None:
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
    assert estimate_tokens(12345678) == 2


def test_estimate_tokens_grows_with_length() -> None:
    previous = 0
    for length in range(1, 64, 4):
        current = estimate_tokens("x" * length)
        assert current > previous
        previous = current


def test_request_estimate_totals_input_and_output() -> None:
    estimate = estimate_request_tokens(
        system_prompt="You are helpful.",
        messages=[LlmMessage.user("hello there"), {"role": "assistant", "content": "hi"}],
        tools=TOOL_SPECS[:2],
        memory_summary="- user likes charts",
        context_json='{"activeSheet":"Sheet1"}',
    )

    assert estimate.total == estimate.input_tokens + estimate.output_tokens
    assert estimate.output_tokens == math.ceil(estimate.input_tokens * 0.25)
    assert estimate.input_tokens > 2 * MESSAGE_OVERHEAD_TOKENS


def test_request_estimate_counts_message_overhead() -> None:
    base = estimate_request_tokens(system_prompt="sys", messages=[])
    with_empty = estimate_request_tokens(system_prompt="sys", messages=[LlmMessage.user("")])
    assert with_empty.input_tokens - base.input_tokens == MESSAGE_OVERHEAD_TOKENS


def test_payload_estimate_serializes_json() -> None:
    assert estimate_payload_tokens({"status": "success"}) == estimate_tokens('{"status":"success"}')


@pytest.mark.parametrize(
    ("value", "expected"),
    [(500, 1000), (24000, 24000), (10**9, 200000), ("abc", 1000), (float("nan"), 1000), (float("inf"), 1000)],
)
def test_clamp_budget(value, expected) -> None:
    assert clamp_budget(value, 1000, 200000) == expected
