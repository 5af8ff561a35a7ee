"""Runtime configuration for AI task orchestration and metering."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_EXECUTION_MODEL = "claude-haiku-4-5-20251001"


@dataclass(slots=True)
class OrchestratorSettings:
    """Execution, dispatch and concurrency settings."""

    execution_model: str = DEFAULT_EXECUTION_MODEL
    max_tool_uses: int = 3
    max_output_tokens: int = 8_192
    previous_result_max_chars: int = 2_000
    single_task_concurrency: int = 5
    sequential_concurrency: int = 3
    poll_interval_seconds: float = 2.0
    retry_delay_seconds: int = 30
    stale_event_seconds: int = 1800
    worker_id: str = "worker-local"
    attachments_root: Path = Path(".auto_kanban_attachments")
    backend: str = "anthropic"


@dataclass(slots=True)
class AnthropicSettings:
    """Messages API connection settings."""

    api_key: str | None = None
    base_url: str = "https://api.anthropic.com"
    api_version: str = "2023-06-01"
    request_timeout_seconds: float = 300.0


@dataclass(slots=True)
class BillingSettings:
    """Token balance and auto-reload settings."""

    auto_reload_event: str = "billing/auto-reload-tokens"
    free_plan_tokens: int = 100_000
    token_cents_per_1000: int = 1


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".auto_kanban.db")
    sqlite_busy_timeout_ms: int = 5_000
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    anthropic: AnthropicSettings = field(default_factory=AnthropicSettings)
    billing: BillingSettings = field(default_factory=BillingSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AUTO_KANBAN_DB_PATH", ".auto_kanban.db")),
            sqlite_busy_timeout_ms=int(os.getenv("AUTO_KANBAN_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            orchestrator=OrchestratorSettings(
                execution_model=os.getenv(
                    "AUTO_KANBAN_EXECUTION_MODEL",
                    DEFAULT_EXECUTION_MODEL,
                ),
                max_tool_uses=int(os.getenv("AUTO_KANBAN_MAX_TOOL_USES", "3")),
                max_output_tokens=int(os.getenv("AUTO_KANBAN_MAX_OUTPUT_TOKENS", "8192")),
                previous_result_max_chars=int(
                    os.getenv("AUTO_KANBAN_PREVIOUS_RESULT_MAX_CHARS", "2000"),
                ),
                single_task_concurrency=int(
                    os.getenv("AUTO_KANBAN_SINGLE_TASK_CONCURRENCY", "5"),
                ),
                sequential_concurrency=int(
                    os.getenv("AUTO_KANBAN_SEQUENTIAL_CONCURRENCY", "3"),
                ),
                poll_interval_seconds=float(
                    os.getenv("AUTO_KANBAN_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                retry_delay_seconds=int(os.getenv("AUTO_KANBAN_RETRY_DELAY_SECONDS", "30")),
                stale_event_seconds=int(os.getenv("AUTO_KANBAN_STALE_EVENT_SECONDS", "1800")),
                worker_id=os.getenv("AUTO_KANBAN_WORKER_ID", "worker-local"),
                attachments_root=Path(
                    os.getenv("AUTO_KANBAN_ATTACHMENTS_ROOT", ".auto_kanban_attachments"),
                ),
                backend=os.getenv("AUTO_KANBAN_LLM_BACKEND", "anthropic").strip().lower(),
            ),
            anthropic=AnthropicSettings(
                api_key=os.getenv("ANTHROPIC_API_KEY") or None,
                base_url=os.getenv("AUTO_KANBAN_ANTHROPIC_BASE_URL", "https://api.anthropic.com"),
                api_version=os.getenv("AUTO_KANBAN_ANTHROPIC_API_VERSION", "2023-06-01"),
                request_timeout_seconds=float(
                    os.getenv("AUTO_KANBAN_ANTHROPIC_TIMEOUT_SECONDS", "300"),
                ),
            ),
            billing=BillingSettings(
                free_plan_tokens=int(os.getenv("AUTO_KANBAN_FREE_PLAN_TOKENS", "100000")),
                token_cents_per_1000=int(os.getenv("AUTO_KANBAN_TOKEN_CENTS_PER_1000", "1")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the orchestrator cannot run with."""

        orchestrator = self.orchestrator
        if orchestrator.max_tool_uses <= 0:
            raise ValueError("AUTO_KANBAN_MAX_TOOL_USES must be > 0.")
        if orchestrator.max_output_tokens <= 0:
            raise ValueError("AUTO_KANBAN_MAX_OUTPUT_TOKENS must be > 0.")
        if orchestrator.previous_result_max_chars < 100:
            raise ValueError("AUTO_KANBAN_PREVIOUS_RESULT_MAX_CHARS must be >= 100.")
        if orchestrator.single_task_concurrency <= 0:
            raise ValueError("AUTO_KANBAN_SINGLE_TASK_CONCURRENCY must be > 0.")
        if orchestrator.sequential_concurrency <= 0:
            raise ValueError("AUTO_KANBAN_SEQUENTIAL_CONCURRENCY must be > 0.")
        if orchestrator.poll_interval_seconds < 0:
            raise ValueError("AUTO_KANBAN_POLL_INTERVAL_SECONDS must be >= 0.")
        if orchestrator.retry_delay_seconds < 0:
            raise ValueError("AUTO_KANBAN_RETRY_DELAY_SECONDS must be >= 0.")
        if orchestrator.stale_event_seconds < 0:
            raise ValueError("AUTO_KANBAN_STALE_EVENT_SECONDS must be >= 0.")
        if self.billing.token_cents_per_1000 <= 0:
            raise ValueError("AUTO_KANBAN_TOKEN_CENTS_PER_1000 must be > 0.")
        if orchestrator.backend not in {"anthropic", "echo"}:
            raise ValueError(
                f"Unsupported AUTO_KANBAN_LLM_BACKEND: {orchestrator.backend!r}. "
                "Expected 'anthropic' or 'echo'.",
            )
        if orchestrator.backend == "anthropic" and not self.anthropic.api_key:
            raise ValueError(
                "ANTHROPIC_API_KEY is required for the anthropic backend. "
                "Set it or use AUTO_KANBAN_LLM_BACKEND=echo.",
            )
