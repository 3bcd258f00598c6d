"""Approximate Gemini spend for the turns recorded in a session."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable

from ..state.models import TurnRecord

__all__ = [
    "GEMINI_PRICING_SOURCE_URL",
    "GEMINI_PRICING_UPDATED",
    "GeminiCostSummary",
    "GeminiModelPricing",
    "estimate_gemini_cost",
    "format_usd",
    "pricing_for_model",
]

GEMINI_PRICING_SOURCE_URL = "https://ai.google.dev/gemini-api/docs/pricing"
GEMINI_PRICING_UPDATED = "2026-02-15"


@dataclass(slots=True, frozen=True)
class GeminiModelPricing:
    label: str
    input_usd_per_million: float
    output_usd_per_million: float
    reasoning_usd_per_million: float
    cache_read_usd_per_million: float
    cache_write_usd_per_million: float
    reasoning_included_in_output: bool = True


FLASH_LITE_PRICING = GeminiModelPricing(
    label="Gemini 2.5 Flash-Lite",
    input_usd_per_million=0.1,
    output_usd_per_million=0.4,
    reasoning_usd_per_million=0.4,
    cache_read_usd_per_million=0.025,
    cache_write_usd_per_million=0.025,
)

FLASH_PRICING = GeminiModelPricing(
    label="Gemini 2.5 Flash",
    input_usd_per_million=0.3,
    output_usd_per_million=2.5,
    reasoning_usd_per_million=2.5,
    cache_read_usd_per_million=0.075,
    cache_write_usd_per_million=0.075,
)


@dataclass(slots=True, frozen=True)
class GeminiCostSummary:
    turn_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    input_cost_usd: float = 0.0
    output_cost_usd: float = 0.0
    reasoning_cost_usd: float = 0.0
    cache_read_cost_usd: float = 0.0
    cache_write_cost_usd: float = 0.0
    total_billable_usd: float = 0.0


def pricing_for_model(model: str) -> GeminiModelPricing:
    """Flash-Lite ids get the lite table; everything else, previews included, is priced as Flash."""
    normalized = (model or "").lower()
    if "flash-lite" in normalized:
        return FLASH_LITE_PRICING
    return FLASH_PRICING


def _share(value: float | None) -> float:
    return max(0.0, min(1.0, float(value or 0.0)))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _to_usd(tokens: int, usd_per_million: float) -> float:
    return (tokens / 1_000_000) * usd_per_million


def estimate_gemini_cost(
    turns: Iterable[TurnRecord],
    *,
    reasoning_token_share: float | None = None,
    cache_read_token_share: float | None = None,
    cache_write_token_share: float | None = None,
) -> GeminiCostSummary:
    """Sum estimated cost over Gemini turns; turns from other providers are skipped.

    Reasoning tokens are billed as output, so their cost is reported but not added to the
    billable total.
    """

    reasoning_share = _share(reasoning_token_share)
    cache_read_share = _share(cache_read_token_share)
    cache_write_share = _share(cache_write_token_share)

    totals = {field: 0 for field in GeminiCostSummary.__dataclass_fields__}
    for turn in turns:
        if turn.provider != "gemini":
            continue
        pricing = pricing_for_model(turn.model)
        input_tokens = max(0, int(turn.estimated_input_tokens))
        output_tokens = max(0, int(turn.estimated_output_tokens))
        reasoning_tokens = _round_half_up(output_tokens * reasoning_share)
        cache_read_tokens = _round_half_up(input_tokens * cache_read_share)
        cache_write_tokens = _round_half_up(input_tokens * cache_write_share)

        input_cost = _to_usd(input_tokens, pricing.input_usd_per_million)
        output_cost = _to_usd(output_tokens, pricing.output_usd_per_million)
        reasoning_cost = _to_usd(reasoning_tokens, pricing.reasoning_usd_per_million)
        cache_read_cost = _to_usd(cache_read_tokens, pricing.cache_read_usd_per_million)
        cache_write_cost = _to_usd(cache_write_tokens, pricing.cache_write_usd_per_million)

        totals["turn_count"] += 1
        totals["input_tokens"] += input_tokens
        totals["output_tokens"] += output_tokens
        totals["reasoning_tokens"] += reasoning_tokens
        totals["cache_read_tokens"] += cache_read_tokens
        totals["cache_write_tokens"] += cache_write_tokens
        totals["input_cost_usd"] += input_cost
        totals["output_cost_usd"] += output_cost
        totals["reasoning_cost_usd"] += reasoning_cost
        totals["cache_read_cost_usd"] += cache_read_cost
        totals["cache_write_cost_usd"] += cache_write_cost
        totals["total_billable_usd"] += input_cost + output_cost + cache_read_cost + cache_write_cost
    return GeminiCostSummary(**totals)


def format_usd(value: float) -> str:
    """Format dollars, switching to four decimals for sub-cent amounts."""
    digits = 4 if 0 < value < 0.01 else 2
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,.{digits}f}"
