from __future__ import annotations

import allure

from auto_kanban.orchestrator.pricing import (
    DEFAULT_PRICING,
    ModelPricing,
    calculate_cost_cents,
    lookup_pricing,
)

pytestmark = [
    allure.epic("Token Metering"),
    allure.feature("Cost Calculation"),
]


def test_calculate_cost_cents_for_known_model() -> None:
    # sonnet: 3.0 in / 15.0 out per 1M tokens
    cost = calculate_cost_cents("claude-sonnet-4-5-20250514", 100_000, 20_000)
    assert cost == 60


def test_unknown_model_falls_back_to_haiku_tier(monkeypatch) -> None:
    monkeypatch.delenv("AUTO_KANBAN_MODEL_PRICING", raising=False)
    assert lookup_pricing("some-future-model") == DEFAULT_PRICING
    assert calculate_cost_cents("some-future-model", 1_000_000, 0) == 100


def test_cache_tokens_are_billed_at_multipliers() -> None:
    # 1M input of which 400k cache writes and 400k cache reads on haiku:
    # 200k * 1.0 + 400k * 1.25 + 400k * 0.1 = 740k token-dollars -> 74 cents
    cost = calculate_cost_cents(
        "claude-haiku-4-5-20251001",
        1_000_000,
        0,
        cache_creation_input_tokens=400_000,
        cache_read_input_tokens=400_000,
    )
    assert cost == 74


def test_cost_is_rounded_to_whole_cents() -> None:
    assert calculate_cost_cents("claude-haiku-4-5-20251001", 40, 0) == 0
    assert calculate_cost_cents("claude-haiku-4-5-20251001", 1_000, 2_000) == 1


def test_zero_usage_costs_nothing() -> None:
    assert calculate_cost_cents("claude-opus-4-20250514", 0, 0) == 0


def test_env_override_takes_precedence(monkeypatch) -> None:
    monkeypatch.setenv(
        "AUTO_KANBAN_MODEL_PRICING",
        "claude-haiku-4-5-20251001:2.0:10.0,*:7.0:7.0,broken-entry",
    )
    assert lookup_pricing("claude-haiku-4-5-20251001") == ModelPricing(
        input_per_1m=2.0,
        output_per_1m=10.0,
    )
    assert lookup_pricing("unknown") == ModelPricing(input_per_1m=7.0, output_per_1m=7.0)
    assert lookup_pricing("claude-4-opus") == ModelPricing(input_per_1m=15.0, output_per_1m=75.0)


def test_half_cent_costs_round_up() -> None:
    # haiku input: 5k tokens = 0.5 cents, 25k tokens = 2.5 cents
    assert calculate_cost_cents("claude-haiku-4-5-20251001", 5_000, 0) == 1
    assert calculate_cost_cents("claude-haiku-4-5-20251001", 25_000, 0) == 3
    assert calculate_cost_cents("claude-haiku-4-5-20251001", 4_999, 0) == 0
