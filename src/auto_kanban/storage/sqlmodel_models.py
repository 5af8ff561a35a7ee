"""SQLModel ORM tables for board context, jobs, metering and the durable runtime."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Workspace(SQLModel, table=True):
    __tablename__ = "workspaces"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    name: str
    owner_id: str = Field(index=True)
    soul_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    brand_summary: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Issue(SQLModel, table=True):
    __tablename__ = "issues"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_issues_parent_position", "parent_issue_id", "position"),)

    id: str = Field(primary_key=True)
    workspace_id: str = Field(
        sa_column=Column(
            ForeignKey("workspaces.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    identifier: str
    title: str
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    status: str = "todo"
    parent_issue_id: str | None = None
    position: int = 0
    ai_assignable: bool = False
    ai_instructions: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    ai_execution_status: str | None = None
    ai_job_id: str | None = None
    ai_execution_result: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    ai_execution_summary: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Attachment(SQLModel, table=True):
    __tablename__ = "attachments"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    issue_id: str = Field(
        sa_column=Column(
            ForeignKey("issues.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    filename: str
    storage_key: str
    mime_type: str
    size_bytes: int
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Activity(SQLModel, table=True):
    __tablename__ = "activities"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    issue_id: str = Field(
        sa_column=Column(
            ForeignKey("issues.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    activity_type: str
    data_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BackgroundJob(SQLModel, table=True):
    __tablename__ = "background_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("run_id", name="uq_background_jobs_run_id"),
        Index("idx_background_jobs_workspace_started", "workspace_id", "started_at"),
    )

    id: str = Field(primary_key=True)
    workspace_id: str
    function_id: str = Field(index=True)
    function_name: str
    run_id: str
    correlation_id: str | None = None
    status: str = Field(index=True)
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    metadata_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    result_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    attempt: int = 1
    max_attempts: int = 3
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TokenUsage(SQLModel, table=True):
    __tablename__ = "token_usage"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_token_usage_workspace_time", "workspace_id", "created_at"),)

    id: str = Field(primary_key=True)
    workspace_id: str
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    cost_cents: int
    source: str = "chat"
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Subscription(SQLModel, table=True):
    __tablename__ = "subscriptions"  # type: ignore[bad-override]

    owner_id: str = Field(primary_key=True)
    tokens_remaining: int = 0
    has_payment_method: bool = False
    auto_reload_enabled: bool = False
    auto_reload_threshold: int | None = None
    auto_reload_amount: int | None = None
    max_monthly_auto_reload: int | None = None
    monthly_auto_reloaded_so_far: int = 0
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SubscriptionEvent(SQLModel, table=True):
    __tablename__ = "subscription_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    owner_id: str = Field(index=True)
    event_type: str
    tokens_added: int = 0
    tokens_balance: int
    payment_reference: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class FunctionStep(SQLModel, table=True):
    __tablename__ = "function_steps"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("run_id", "step_name", name="uq_function_steps_run_step"),
    )

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(index=True)
    step_name: str
    output_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RuntimeEvent(SQLModel, table=True):
    __tablename__ = "runtime_events"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("run_id", name="uq_runtime_events_run_id"),
        Index("idx_runtime_events_ready", "status", "run_after"),
    )

    event_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    run_id: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    attempt: int = 0
    max_attempts: int = 1
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    worker_id: str | None = None
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
