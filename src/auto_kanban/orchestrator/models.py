"""Domain models for AI subtask execution, job tracking and metering."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class AiExecutionStatus(str, Enum):
    """Per-subtask AI execution states (null means never requested)."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


NON_TERMINAL_JOB_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING)


class RuntimeEventStatus(str, Enum):
    """Outbox event states consumed by the dispatcher."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class WorkspaceSoul:
    """Workspace persona rendered into the cacheable prompt segment."""

    name: str
    personality: str
    tone: str
    response_length: str

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> WorkspaceSoul:
        return cls(
            name=str(payload.get("name", "")),
            personality=str(payload.get("personality", "")),
            tone=str(payload.get("tone", "")),
            response_length=str(payload.get("responseLength", payload.get("response_length", ""))),
        )

    def to_payload(self) -> dict[str, str]:
        return {
            "name": self.name,
            "personality": self.personality,
            "tone": self.tone,
            "responseLength": self.response_length,
        }


@dataclass(slots=True)
class WorkspaceView:
    """Workspace context needed by orchestration."""

    workspace_id: str
    name: str
    owner_id: str
    soul: WorkspaceSoul | None
    brand_summary: str | None


@dataclass(slots=True)
class IssueView:
    """Readable issue/subtask view."""

    issue_id: str
    workspace_id: str
    identifier: str
    title: str
    description: str | None
    status: str
    parent_issue_id: str | None
    position: int
    ai_assignable: bool
    ai_instructions: str | None
    ai_execution_status: AiExecutionStatus | None
    ai_job_id: str | None
    ai_execution_result: str | None
    ai_execution_summary: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobCreate:
    """Input payload for insert-if-absent job creation."""

    workspace_id: str
    function_id: str
    function_name: str
    run_id: str
    status: JobStatus = JobStatus.PENDING
    correlation_id: str | None = None
    metadata: dict[str, Any] | None = None
    attempt: int = 1
    max_attempts: int = 3


@dataclass(slots=True)
class JobView:
    """Stored job record."""

    job_id: str
    workspace_id: str
    function_id: str
    function_name: str
    run_id: str
    correlation_id: str | None
    status: JobStatus
    started_at: datetime | None
    completed_at: datetime | None
    metadata: dict[str, Any]
    result: Any
    error: str | None
    attempt: int
    max_attempts: int
    created_at: datetime


@dataclass(slots=True)
class TokenUsageWrite:
    """One metered execution to append to the usage ledger."""

    workspace_id: str
    model: str
    input_tokens: int
    output_tokens: int
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    source: str = "chat"


@dataclass(slots=True)
class TokenUsageView:
    """Stored immutable ledger row."""

    usage_id: str
    workspace_id: str
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cache_creation_input_tokens: int
    cache_read_input_tokens: int
    cost_cents: int
    source: str
    created_at: datetime


@dataclass(slots=True)
class SubscriptionView:
    """Owner token balance with auto-reload configuration."""

    owner_id: str
    tokens_remaining: int
    has_payment_method: bool
    auto_reload_enabled: bool
    auto_reload_threshold: int | None
    auto_reload_amount: int | None
    max_monthly_auto_reload: int | None
    monthly_auto_reloaded_so_far: int
    updated_at: datetime


@dataclass(slots=True)
class AutoReloadSettingsWrite:
    """Operator-supplied auto-reload configuration."""

    auto_reload_enabled: bool
    auto_reload_threshold: int | None = None
    auto_reload_amount: int | None = None
    max_monthly_auto_reload: int | None = None
    has_payment_method: bool | None = None


@dataclass(slots=True)
class RuntimeEventView:
    """Outbox event claimed by the dispatcher."""

    event_id: str
    name: str
    run_id: str
    payload: dict[str, Any]
    status: RuntimeEventStatus
    attempt: int
    max_attempts: int
    run_after: datetime
    worker_id: str | None
    error: str | None
    created_at: datetime
    heartbeat_at: datetime | None = None


@dataclass(slots=True)
class AttachmentView:
    """Stored attachment metadata."""

    attachment_id: str
    issue_id: str
    filename: str
    storage_key: str
    mime_type: str
    size_bytes: int
    created_at: datetime


@dataclass(slots=True)
class PreviousTaskResult:
    """Digest of a completed chain step handed to later subtasks."""

    identifier: str
    title: str
    summary: str


@dataclass(slots=True)
class SubtaskSucceeded:
    """Chain outcome for a subtask that produced output."""

    issue_id: str
    identifier: str
    title: str
    summary: str
    attached: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "kind": "succeeded",
            "issueId": self.issue_id,
            "identifier": self.identifier,
            "title": self.title,
            "summary": self.summary,
            "attached": self.attached,
        }


@dataclass(slots=True)
class SubtaskFailed:
    """Chain outcome for a subtask that did not produce output."""

    issue_id: str
    reason: str

    def to_payload(self) -> dict[str, Any]:
        return {"kind": "failed", "issueId": self.issue_id, "reason": self.reason}


SubtaskOutcome = SubtaskSucceeded | SubtaskFailed


def outcome_from_payload(payload: dict[str, Any]) -> SubtaskOutcome:
    """Decode a memoized outcome back into its tagged variant."""

    kind = payload.get("kind")
    if kind == "succeeded":
        return SubtaskSucceeded(
            issue_id=str(payload["issueId"]),
            identifier=str(payload["identifier"]),
            title=str(payload["title"]),
            summary=str(payload["summary"]),
            attached=bool(payload.get("attached", False)),
        )
    if kind == "failed":
        return SubtaskFailed(issue_id=str(payload["issueId"]), reason=str(payload["reason"]))
    raise ValueError(f"Unknown subtask outcome kind: {kind!r}")


@dataclass(slots=True)
class AiTaskStatusView:
    """Execution status snapshot for one subtask."""

    status: AiExecutionStatus | None
    result: Any = None
    summary: str | None = None
