"""Token cost calculation for metered model calls."""

from __future__ import annotations

import math
import os
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


MODEL_PRICING: dict[str, ModelPricing] = {
    "claude-haiku-4-5-20251001": ModelPricing(input_per_1m=1.0, output_per_1m=5.0),
    "claude-4-5-haiku": ModelPricing(input_per_1m=1.0, output_per_1m=5.0),
    "claude-sonnet-4-5-20250514": ModelPricing(input_per_1m=3.0, output_per_1m=15.0),
    "claude-4-5-sonnet": ModelPricing(input_per_1m=3.0, output_per_1m=15.0),
    "claude-sonnet-4-20250514": ModelPricing(input_per_1m=3.0, output_per_1m=15.0),
    "claude-4-sonnet": ModelPricing(input_per_1m=3.0, output_per_1m=15.0),
    "claude-opus-4-5-20251101": ModelPricing(input_per_1m=5.0, output_per_1m=25.0),
    "claude-4-5-opus": ModelPricing(input_per_1m=5.0, output_per_1m=25.0),
    "claude-opus-4-20250514": ModelPricing(input_per_1m=15.0, output_per_1m=75.0),
    "claude-4-opus": ModelPricing(input_per_1m=15.0, output_per_1m=75.0),
}

# Haiku tier: unknown models are never priced below the cheapest known model.
DEFAULT_PRICING = ModelPricing(input_per_1m=1.0, output_per_1m=5.0)

CACHE_WRITE_MULTIPLIER = 1.25
CACHE_READ_MULTIPLIER = 0.1

# USD per 1M tokens -> cents per token is price / 10_000.
_CENTS_DIVISOR = 10_000


def lookup_pricing(model: str) -> ModelPricing:
    """Resolve pricing for a model, env overrides first, then built-in table."""

    overrides = _parse_pricing_mapping(os.getenv("AUTO_KANBAN_MODEL_PRICING", ""))
    normalized = model.strip()
    direct = overrides.get(normalized) or MODEL_PRICING.get(normalized)
    if direct is not None:
        return direct
    return overrides.get("*", DEFAULT_PRICING)


def calculate_cost_cents(
    model: str,
    input_tokens: int,
    output_tokens: int,
    cache_creation_input_tokens: int = 0,
    cache_read_input_tokens: int = 0,
) -> int:
    """Price one call in whole cents.

    ``input_tokens`` is the total input including cache writes and reads; the
    cached portions are billed at their multipliers and the sum is rounded once.
    """

    pricing = lookup_pricing(model)
    regular_input_tokens = max(
        0,
        input_tokens - cache_creation_input_tokens - cache_read_input_tokens,
    )
    cost = (
        regular_input_tokens * pricing.input_per_1m
        + output_tokens * pricing.output_per_1m
        + cache_creation_input_tokens * pricing.input_per_1m * CACHE_WRITE_MULTIPLIER
        + cache_read_input_tokens * pricing.input_per_1m * CACHE_READ_MULTIPLIER
    ) / _CENTS_DIVISOR
    # Half-cents round up.
    return max(0, math.floor(cost + 0.5))


def _parse_pricing_mapping(raw: str) -> dict[str, ModelPricing]:
    """Parse `AUTO_KANBAN_MODEL_PRICING` mapping.

    Format:
    - `model:input_per_1m:output_per_1m`
    - multiple entries separated by `,`
    - `*` as model replaces the default tier
    """

    parsed: dict[str, ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.rsplit(":", 2)]
        if len(parts) != 3:
            continue
        model, input_price, output_price = parts
        try:
            input_per_1m = float(input_price)
            output_per_1m = float(output_price)
        except ValueError:
            continue
        if input_per_1m < 0 or output_per_1m < 0:
            continue
        parsed[model] = ModelPricing(input_per_1m=input_per_1m, output_per_1m=output_per_1m)
    return parsed
