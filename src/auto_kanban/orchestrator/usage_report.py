"""Token usage aggregation and CLI rendering."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, timedelta

from auto_kanban.orchestrator.models import TokenUsageView
from auto_kanban.storage.common import utc_now


@dataclass(slots=True)
class UsageBucket:
    """Aggregated usage for one model or source."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost_cents: int = 0
    request_count: int = 0

    def add(self, record: TokenUsageView) -> None:
        self.input_tokens += record.input_tokens
        self.output_tokens += record.output_tokens
        self.total_tokens += record.total_tokens
        self.cost_cents += record.cost_cents
        self.request_count += 1


@dataclass(slots=True)
class UsageSummary:
    """Workspace-wide usage totals."""

    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0
    total_cost_cents: int = 0
    total_cache_creation_tokens: int = 0
    total_cache_read_tokens: int = 0
    by_model: dict[str, UsageBucket] = field(default_factory=dict)
    by_source: dict[str, UsageBucket] = field(default_factory=dict)


@dataclass(slots=True)
class DailyUsage:
    """Usage for one calendar day (UTC)."""

    day: date
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost_cents: int = 0
    request_count: int = 0
    by_model: dict[str, int] = field(default_factory=dict)


def model_group(model: str) -> str:
    """Collapse model ids into their family name."""

    lowered = model.lower()
    for family in ("haiku", "sonnet", "opus"):
        if family in lowered:
            return family.capitalize()
    return "Other"


def build_usage_summary(records: Iterable[TokenUsageView]) -> UsageSummary:
    summary = UsageSummary()
    for record in records:
        summary.total_input_tokens += record.input_tokens
        summary.total_output_tokens += record.output_tokens
        summary.total_tokens += record.total_tokens
        summary.total_cost_cents += record.cost_cents
        summary.total_cache_creation_tokens += record.cache_creation_input_tokens
        summary.total_cache_read_tokens += record.cache_read_input_tokens
        summary.by_model.setdefault(record.model, UsageBucket()).add(record)
        summary.by_source.setdefault(record.source, UsageBucket()).add(record)
    return summary


def build_daily_usage(
    records: Iterable[TokenUsageView],
    *,
    days: int = 30,
    today: date | None = None,
) -> list[DailyUsage]:
    """Per-day usage from ``today - days`` through ``today``, zero-filled."""

    end = today or utc_now().date()
    start = end - timedelta(days=max(0, days))
    buckets: dict[date, DailyUsage] = {}
    for offset in range((end - start).days + 1):
        day = start + timedelta(days=offset)
        buckets[day] = DailyUsage(day=day)
    for record in records:
        daily = buckets.get(record.created_at.date())
        if daily is None:
            continue
        daily.input_tokens += record.input_tokens
        daily.output_tokens += record.output_tokens
        daily.total_tokens += record.total_tokens
        daily.cost_cents += record.cost_cents
        daily.request_count += 1
        group = model_group(record.model)
        daily.by_model[group] = daily.by_model.get(group, 0) + record.total_tokens
    return [buckets[day] for day in sorted(buckets)]


def format_cost(cents: int) -> str:
    """Render whole cents as dollars."""

    if cents < 100:
        return f"$0.{cents:02d}"
    return f"${cents / 100:.2f}"


def format_tokens(tokens: int) -> str:
    return f"{tokens:,}"


def render_usage_lines(*, summary: UsageSummary, workspace_id: str) -> list[str]:
    """Render the workspace usage summary for CLI output."""

    lines = [
        f"Token usage for workspace {workspace_id}",
        (
            "Totals: "
            f"input={format_tokens(summary.total_input_tokens)} "
            f"output={format_tokens(summary.total_output_tokens)} "
            f"total={format_tokens(summary.total_tokens)} "
            f"cost={format_cost(summary.total_cost_cents)}"
        ),
        (
            "Cache: "
            f"write={format_tokens(summary.total_cache_creation_tokens)} "
            f"read={format_tokens(summary.total_cache_read_tokens)}"
        ),
    ]
    for title, buckets in (("By model:", summary.by_model), ("By source:", summary.by_source)):
        lines.append(title)
        if not buckets:
            lines.append("  none")
            continue
        for key, bucket in sorted(buckets.items(), key=lambda item: -item[1].total_tokens):
            lines.append(
                f"  {key} requests={bucket.request_count} "
                f"total={format_tokens(bucket.total_tokens)} cost={format_cost(bucket.cost_cents)}",
            )
    return lines


def render_daily_lines(daily: list[DailyUsage]) -> list[str]:
    lines = [f"Daily usage ({len(daily)} days)"]
    for entry in daily:
        models = " ".join(f"{name}={tokens}" for name, tokens in sorted(entry.by_model.items()))
        lines.append(
            f"  {entry.day.isoformat()} requests={entry.request_count} "
            f"total={format_tokens(entry.total_tokens)} cost={format_cost(entry.cost_cents)}"
            + (f" {models}" if models else ""),
        )
    return lines
