from __future__ import annotations

from datetime import UTC, date, datetime

import allure

from auto_kanban.orchestrator.models import TokenUsageView
from auto_kanban.orchestrator.usage_report import (
    build_daily_usage,
    build_usage_summary,
    format_cost,
    format_tokens,
    model_group,
    render_daily_lines,
    render_usage_lines,
)

pytestmark = [
    allure.epic("Token Metering"),
    allure.feature("Usage Reports"),
]


def _record(
    model: str,
    total: int,
    cost_cents: int,
    created_at: datetime,
    source: str = "ai-task-execution",
) -> TokenUsageView:
    return TokenUsageView(
        usage_id=f"u-{model}-{total}",
        workspace_id="ws-1",
        model=model,
        input_tokens=total - 100,
        output_tokens=100,
        total_tokens=total,
        cache_creation_input_tokens=10,
        cache_read_input_tokens=20,
        cost_cents=cost_cents,
        source=source,
        created_at=created_at,
    )


def test_model_group_collapses_families() -> None:
    assert model_group("claude-haiku-4-5-20251001") == "Haiku"
    assert model_group("claude-4-5-sonnet") == "Sonnet"
    assert model_group("claude-opus-4-20250514") == "Opus"
    assert model_group("gpt-test") == "Other"


def test_format_helpers() -> None:
    assert format_cost(5) == "$0.05"
    assert format_cost(123) == "$1.23"
    assert format_tokens(1_234_567) == "1,234,567"


def test_usage_summary_groups_by_model_and_source() -> None:
    now = datetime(2026, 10, 19, 12, tzinfo=UTC)
    records = [
        _record("claude-haiku-4-5-20251001", 1_000, 1, now),
        _record("claude-haiku-4-5-20251001", 2_000, 2, now, source="ai-tasks-sequential"),
        _record("claude-sonnet-4-5-20250514", 500, 4, now),
    ]

    summary = build_usage_summary(records)

    assert summary.total_tokens == 3_500
    assert summary.total_cost_cents == 7
    assert summary.total_cache_read_tokens == 60
    assert summary.by_model["claude-haiku-4-5-20251001"].request_count == 2
    assert summary.by_source["ai-task-execution"].total_tokens == 1_500

    lines = render_usage_lines(summary=summary, workspace_id="ws-1")
    assert lines[0] == "Token usage for workspace ws-1"
    assert "total=3,500 cost=$0.07" in lines[1]
    model_lines = lines[lines.index("By model:") + 1 : lines.index("By source:")]
    assert model_lines[0].startswith("  claude-haiku-4-5-20251001 requests=2")


def test_daily_usage_is_zero_filled_and_grouped() -> None:
    today = date(2026, 10, 19)
    records = [
        _record("claude-haiku-4-5-20251001", 1_000, 1, datetime(2026, 10, 19, 8, tzinfo=UTC)),
        _record("claude-4-opus", 400, 9, datetime(2026, 10, 19, 9, tzinfo=UTC)),
        _record("claude-4-opus", 700, 3, datetime(2026, 10, 17, 9, tzinfo=UTC)),
        _record("claude-4-opus", 900, 3, datetime(2026, 9, 1, 9, tzinfo=UTC)),
    ]

    daily = build_daily_usage(records, days=3, today=today)

    assert [entry.day for entry in daily] == [
        date(2026, 10, 16),
        date(2026, 10, 17),
        date(2026, 10, 18),
        date(2026, 10, 19),
    ]
    assert daily[0].total_tokens == 0
    assert daily[1].by_model == {"Opus": 700}
    assert daily[3].by_model == {"Haiku": 1_000, "Opus": 400}
    assert daily[3].request_count == 2

    lines = render_daily_lines(daily)
    assert lines[0] == "Daily usage (4 days)"
    assert lines[-1] == "  2026-10-19 requests=2 total=1,400 cost=$0.10 Haiku=1000 Opus=400"
