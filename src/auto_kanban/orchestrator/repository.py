"""Persistence facade for subtasks, jobs, token ledger, balances and the step runtime."""

from __future__ import annotations

import json
from collections.abc import Collection, Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from auto_kanban.orchestrator.models import (
    NON_TERMINAL_JOB_STATUSES,
    AiExecutionStatus,
    AttachmentView,
    AutoReloadSettingsWrite,
    IssueView,
    JobCreate,
    JobStatus,
    JobView,
    RuntimeEventStatus,
    RuntimeEventView,
    SubscriptionView,
    TokenUsageView,
    TokenUsageWrite,
    WorkspaceSoul,
    WorkspaceView,
)
from auto_kanban.storage.alembic_runner import upgrade_head
from auto_kanban.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from auto_kanban.storage.sqlmodel_models import (
    Activity,
    Attachment,
    BackgroundJob,
    FunctionStep,
    Issue,
    RuntimeEvent,
    Subscription,
    SubscriptionEvent,
    TokenUsage,
    Workspace,
)


@dataclass(slots=True)
class IssueCreate:
    """Minimal issue insert used to seed board context."""

    workspace_id: str
    identifier: str
    title: str
    description: str | None = None
    parent_issue_id: str | None = None
    position: int = 0
    ai_assignable: bool = False
    ai_instructions: str | None = None
    issue_id: str | None = None
    status: str = "todo"


class OrchestratorRepository:
    """Orchestration persistence backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- board context ---------------------------------------------------

    def create_workspace(  # noqa: PLR0913
        self,
        *,
        name: str,
        owner_id: str,
        soul: WorkspaceSoul | None = None,
        brand_summary: str | None = None,
        workspace_id: str | None = None,
    ) -> WorkspaceView:
        with Session(self.engine) as session:
            row = Workspace(
                id=workspace_id or str(uuid4()),
                name=name,
                owner_id=owner_id,
                soul_json=json.dumps(soul.to_payload()) if soul is not None else None,
                brand_summary=brand_summary,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_workspace_view(row)

    def get_workspace(self, *, workspace_id: str) -> WorkspaceView | None:
        with Session(self.engine) as session:
            row = session.get(Workspace, workspace_id)
            return _to_workspace_view(row) if row is not None else None

    def create_issue(self, payload: IssueCreate) -> IssueView:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = Issue(
                id=payload.issue_id or str(uuid4()),
                workspace_id=payload.workspace_id,
                identifier=payload.identifier,
                title=payload.title,
                description=payload.description,
                status=payload.status,
                parent_issue_id=payload.parent_issue_id,
                position=payload.position,
                ai_assignable=payload.ai_assignable,
                ai_instructions=payload.ai_instructions,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_issue_view(row)

    def get_issue(self, *, issue_id: str) -> IssueView | None:
        with Session(self.engine) as session:
            row = session.get(Issue, issue_id)
            return _to_issue_view(row) if row is not None else None

    def list_ai_subtasks(self, *, parent_issue_id: str) -> list[IssueView]:
        """AI-assignable children of a parent in execution (position) order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Issue)
                .where(
                    Issue.parent_issue_id == parent_issue_id,
                    col(Issue.ai_assignable).is_(True),
                )
                .order_by(col(Issue.position).asc(), col(Issue.created_at).asc()),
            ).all()
        return [_to_issue_view(row) for row in rows]

    def set_ai_execution_status(
        self,
        *,
        issue_ids: Collection[str],
        status: AiExecutionStatus,
        job_id: str | None = None,
    ) -> int:
        if not issue_ids:
            return 0
        values: dict[str, Any] = {
            "ai_execution_status": status.value,
            "updated_at": to_db_datetime(utc_now()),
        }
        if job_id is not None:
            values["ai_job_id"] = job_id
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Issue).where(col(Issue.id).in_(list(issue_ids))).values(**values),
            )
            session.commit()
            return result.rowcount

    def clear_pending_ai_status(self, *, issue_ids: Collection[str]) -> int:
        """Drop the pending marker from issues a run will not execute."""

        if not issue_ids:
            return 0
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Issue)
                .where(
                    col(Issue.id).in_(list(issue_ids)),
                    col(Issue.ai_execution_status) == AiExecutionStatus.PENDING.value,
                )
                .values(ai_execution_status=None, updated_at=to_db_datetime(utc_now())),
            )
            session.commit()
            return result.rowcount

    def finalize_subtask(
        self,
        *,
        issue_id: str,
        status: AiExecutionStatus,
        result: Mapping[str, Any] | None,
        summary: str,
        board_status: str | None = None,
    ) -> bool:
        """Record the terminal AI execution state of one subtask."""

        values: dict[str, Any] = {
            "ai_execution_status": status.value,
            "ai_execution_summary": summary,
            "updated_at": to_db_datetime(utc_now()),
        }
        if result is not None:
            values["ai_execution_result"] = json.dumps(dict(result), ensure_ascii=False)
        if board_status is not None:
            values["status"] = board_status
        with Session(self.engine) as session:
            updated = session.exec(
                sa_update(Issue).where(col(Issue.id) == issue_id).values(**values),
            )
            session.commit()
            return updated.rowcount == 1

    def fail_unfinished_subtasks(self, *, issue_ids: Collection[str], summary: str) -> int:
        """Fail subtasks still pending/running; terminal ones keep their outcome."""

        if not issue_ids:
            return 0
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Issue)
                .where(
                    col(Issue.id).in_(list(issue_ids)),
                    col(Issue.ai_execution_status).in_(
                        [AiExecutionStatus.PENDING.value, AiExecutionStatus.RUNNING.value],
                    ),
                )
                .values(
                    ai_execution_status=AiExecutionStatus.FAILED.value,
                    ai_execution_summary=summary,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
            return result.rowcount

    def add_attachment(  # noqa: PLR0913
        self,
        *,
        issue_id: str,
        filename: str,
        storage_key: str,
        mime_type: str,
        size_bytes: int,
        source: str,
    ) -> AttachmentView:
        """Record attachment metadata, log the activity and touch the issue."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = Attachment(
                id=str(uuid4()),
                issue_id=issue_id,
                filename=filename,
                storage_key=storage_key,
                mime_type=mime_type,
                size_bytes=size_bytes,
                created_at=now,
            )
            session.add(row)
            session.add(
                Activity(
                    id=str(uuid4()),
                    issue_id=issue_id,
                    activity_type="attachment_added",
                    data_json=json.dumps(
                        {
                            "attachmentId": row.id,
                            "attachmentFilename": filename,
                            "source": source,
                        },
                    ),
                    created_at=now,
                ),
            )
            session.exec(sa_update(Issue).where(col(Issue.id) == issue_id).values(updated_at=now))
            session.commit()
            session.refresh(row)
            return _to_attachment_view(row)

    def list_attachments(self, *, issue_id: str) -> list[AttachmentView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Attachment)
                .where(Attachment.issue_id == issue_id)
                .order_by(col(Attachment.created_at).asc()),
            ).all()
        return [_to_attachment_view(row) for row in rows]

    # -- jobs ------------------------------------------------------------

    def create_job(self, payload: JobCreate) -> bool:
        """Insert the job row unless one already exists for the run id."""

        now = to_db_datetime(utc_now())
        statement = (
            sqlite_insert(BackgroundJob)
            .values(
                id=str(uuid4()),
                workspace_id=payload.workspace_id,
                function_id=payload.function_id,
                function_name=payload.function_name,
                run_id=payload.run_id,
                correlation_id=payload.correlation_id,
                status=payload.status.value,
                started_at=now if payload.status == JobStatus.RUNNING else None,
                metadata_json=_dump_json(payload.metadata),
                attempt=payload.attempt,
                max_attempts=payload.max_attempts,
                created_at=now,
            )
            .on_conflict_do_nothing(index_elements=["run_id"])
        )
        with Session(self.engine) as session:
            result = session.exec(statement)
            session.commit()
            return result.rowcount == 1

    def start_job(self, *, run_id: str, attempt: int | None = None) -> bool:
        """Move a pending job to running."""

        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {"status": JobStatus.RUNNING.value, "started_at": now}
        if attempt is not None:
            values["attempt"] = attempt
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BackgroundJob)
                .where(
                    col(BackgroundJob.run_id) == run_id,
                    col(BackgroundJob.status) == JobStatus.PENDING.value,
                )
                .values(**values),
            )
            session.commit()
            return result.rowcount == 1

    def complete_job(self, *, run_id: str, result: Any = None) -> bool:
        return self._finish_job(
            run_id=run_id,
            status=JobStatus.COMPLETED,
            values={"result_json": _dump_json(result)},
        )

    def fail_job(self, *, run_id: str, error: str, result: Any = None) -> bool:
        values: dict[str, Any] = {"error": error}
        if result is not None:
            values["result_json"] = _dump_json(result)
        return self._finish_job(run_id=run_id, status=JobStatus.FAILED, values=values)

    def cancel_job(self, *, run_id: str) -> bool:
        return self._finish_job(run_id=run_id, status=JobStatus.CANCELLED, values={})

    def _finish_job(self, *, run_id: str, status: JobStatus, values: dict[str, Any]) -> bool:
        """Apply one terminal transition; rows already terminal are left untouched."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BackgroundJob)
                .where(
                    col(BackgroundJob.run_id) == run_id,
                    col(BackgroundJob.status).in_(
                        [value.value for value in NON_TERMINAL_JOB_STATUSES],
                    ),
                )
                .values(
                    status=status.value,
                    completed_at=to_db_datetime(utc_now()),
                    **values,
                ),
            )
            session.commit()
            return result.rowcount == 1

    def get_job(self, *, run_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(BackgroundJob).where(BackgroundJob.run_id == run_id),
            ).one_or_none()
            return _to_job_view(row) if row is not None else None

    def count_jobs(self, *, run_id: str) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count()).select_from(BackgroundJob).where(
                    BackgroundJob.run_id == run_id,
                ),
            ).one()

    def list_jobs(
        self,
        *,
        workspace_id: str | None = None,
        statuses: Collection[JobStatus] = (),
        limit: int = 50,
    ) -> list[JobView]:
        statement = select(BackgroundJob)
        if workspace_id is not None:
            statement = statement.where(BackgroundJob.workspace_id == workspace_id)
        if statuses:
            statement = statement.where(
                col(BackgroundJob.status).in_([status.value for status in statuses]),
            )
        statement = statement.order_by(col(BackgroundJob.created_at).desc()).limit(limit)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    # -- token ledger and balances -----------------------------------------

    def append_token_usage(self, payload: TokenUsageWrite, *, cost_cents: int) -> TokenUsageView:
        """Append one immutable ledger row."""

        with Session(self.engine) as session:
            row = TokenUsage(
                id=str(uuid4()),
                workspace_id=payload.workspace_id,
                model=payload.model,
                input_tokens=payload.input_tokens,
                output_tokens=payload.output_tokens,
                total_tokens=payload.input_tokens + payload.output_tokens,
                cache_creation_input_tokens=payload.cache_creation_input_tokens,
                cache_read_input_tokens=payload.cache_read_input_tokens,
                cost_cents=cost_cents,
                source=payload.source,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_usage_view(row)

    def list_token_usage(
        self,
        *,
        workspace_id: str,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[TokenUsageView]:
        statement = select(TokenUsage).where(TokenUsage.workspace_id == workspace_id)
        if since is not None:
            statement = statement.where(TokenUsage.created_at >= to_db_datetime(since))
        statement = statement.order_by(col(TokenUsage.created_at).desc())
        if limit is not None:
            statement = statement.limit(limit)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_usage_view(row) for row in rows]

    def ensure_subscription(self, *, owner_id: str, initial_tokens: int) -> SubscriptionView:
        """Return the owner's balance row, creating it with the free allowance."""

        statement = (
            sqlite_insert(Subscription)
            .values(
                owner_id=owner_id,
                tokens_remaining=max(0, initial_tokens),
                has_payment_method=False,
                auto_reload_enabled=False,
                monthly_auto_reloaded_so_far=0,
                updated_at=to_db_datetime(utc_now()),
            )
            .on_conflict_do_nothing(index_elements=["owner_id"])
        )
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()
            row = session.get(Subscription, owner_id)
            if row is None:
                raise RuntimeError(f"Subscription not found: {owner_id}")
            return _to_subscription_view(row)

    def get_subscription(self, *, owner_id: str) -> SubscriptionView | None:
        with Session(self.engine) as session:
            row = session.get(Subscription, owner_id)
            return _to_subscription_view(row) if row is not None else None

    def configure_auto_reload(
        self,
        *,
        owner_id: str,
        settings: AutoReloadSettingsWrite,
    ) -> SubscriptionView:
        values: dict[str, Any] = {
            "auto_reload_enabled": settings.auto_reload_enabled,
            "auto_reload_threshold": settings.auto_reload_threshold,
            "auto_reload_amount": settings.auto_reload_amount,
            "max_monthly_auto_reload": settings.max_monthly_auto_reload,
            "updated_at": to_db_datetime(utc_now()),
        }
        if settings.has_payment_method is not None:
            values["has_payment_method"] = settings.has_payment_method
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Subscription)
                .where(col(Subscription.owner_id) == owner_id)
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(f"Subscription not found: {owner_id}")
            session.commit()
            row = session.get(Subscription, owner_id)
            return _to_subscription_view(row)  # type: ignore[arg-type]

    def deduct_tokens(self, *, owner_id: str, tokens: int) -> SubscriptionView | None:
        """Atomically decrement the balance, floored at zero.

        Returns the post-decrement row, or None when the owner has no balance.
        """

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Subscription)
                .where(col(Subscription.owner_id) == owner_id)
                .values(
                    tokens_remaining=func.max(0, Subscription.tokens_remaining - max(0, tokens)),
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            row = session.exec(
                select(Subscription).where(Subscription.owner_id == owner_id),
            ).one()
            view = _to_subscription_view(row)
            session.commit()
            return view

    def credit_auto_reload(
        self,
        *,
        owner_id: str,
        tokens: int,
        payment_reference: str | None,
    ) -> SubscriptionView | None:
        """Add reloaded tokens, count them against the monthly cap, log the event."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Subscription)
                .where(col(Subscription.owner_id) == owner_id)
                .values(
                    tokens_remaining=Subscription.tokens_remaining + tokens,
                    monthly_auto_reloaded_so_far=Subscription.monthly_auto_reloaded_so_far
                    + tokens,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            row = session.exec(
                select(Subscription).where(Subscription.owner_id == owner_id),
            ).one()
            view = _to_subscription_view(row)
            session.add(
                SubscriptionEvent(
                    owner_id=owner_id,
                    event_type="tokens_auto_reloaded",
                    tokens_added=tokens,
                    tokens_balance=view.tokens_remaining,
                    payment_reference=payment_reference,
                    created_at=now,
                ),
            )
            session.commit()
            return view

    def list_subscription_events(self, *, owner_id: str) -> list[SubscriptionEvent]:
        with Session(self.engine) as session:
            return list(
                session.exec(
                    select(SubscriptionEvent)
                    .where(SubscriptionEvent.owner_id == owner_id)
                    .order_by(col(SubscriptionEvent.id).asc()),
                ).all(),
            )

    # -- durable step runtime ---------------------------------------------

    def get_step_output(self, *, run_id: str, step_name: str) -> str | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(FunctionStep).where(
                    FunctionStep.run_id == run_id,
                    FunctionStep.step_name == step_name,
                ),
            ).one_or_none()
            return row.output_json if row is not None else None

    def save_step_output(self, *, run_id: str, step_name: str, output_json: str) -> bool:
        """Memoize a step result; the first writer for (run, step) wins."""

        statement = (
            sqlite_insert(FunctionStep)
            .values(
                run_id=run_id,
                step_name=step_name,
                output_json=output_json,
                created_at=to_db_datetime(utc_now()),
            )
            .on_conflict_do_nothing(index_elements=["run_id", "step_name"])
        )
        with Session(self.engine) as session:
            result = session.exec(statement)
            session.commit()
            return result.rowcount == 1

    def list_step_names(self, *, run_id: str) -> list[str]:
        with Session(self.engine) as session:
            return list(
                session.exec(
                    select(FunctionStep.step_name)
                    .where(FunctionStep.run_id == run_id)
                    .order_by(col(FunctionStep.id).asc()),
                ).all(),
            )

    def enqueue_event(
        self,
        *,
        name: str,
        payload: Mapping[str, Any],
        run_id: str | None = None,
        max_attempts: int = 1,
    ) -> RuntimeEventView:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = RuntimeEvent(
                event_id=str(uuid4()),
                name=name,
                run_id=run_id or str(uuid4()),
                payload_json=json.dumps(dict(payload), ensure_ascii=False, sort_keys=True),
                status=RuntimeEventStatus.QUEUED.value,
                attempt=0,
                max_attempts=max(1, max_attempts),
                run_after=now,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_event_view(row)

    def claim_next_event(
        self,
        *,
        worker_id: str,
        concurrency_limits: Mapping[str, int | None],
    ) -> RuntimeEventView | None:
        """Atomically claim the oldest ready event whose function has capacity.

        Only event names present in ``concurrency_limits`` are claimable; a
        ``None`` limit means unbounded.
        """

        if not concurrency_limits:
            return None
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            candidates = session.exec(
                select(RuntimeEvent)
                .where(
                    RuntimeEvent.status == RuntimeEventStatus.QUEUED.value,
                    RuntimeEvent.run_after <= now,
                    col(RuntimeEvent.name).in_(list(concurrency_limits)),
                )
                .order_by(col(RuntimeEvent.run_after).asc(), col(RuntimeEvent.created_at).asc())
                .limit(50),
            ).all()
            candidate_ids = [(row.event_id, row.name, row.attempt) for row in candidates]

        for event_id, name, attempt in candidate_ids:
            conditions = [
                col(RuntimeEvent.event_id) == event_id,
                col(RuntimeEvent.status) == RuntimeEventStatus.QUEUED.value,
            ]
            limit = concurrency_limits.get(name)
            if limit is not None:
                running = (
                    select(func.count())
                    .select_from(RuntimeEvent)
                    .where(
                        RuntimeEvent.name == name,
                        RuntimeEvent.status == RuntimeEventStatus.RUNNING.value,
                    )
                    .scalar_subquery()
                )
                conditions.append(running < limit)
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(RuntimeEvent)
                    .where(*conditions)
                    .values(
                        status=RuntimeEventStatus.RUNNING.value,
                        attempt=attempt + 1,
                        worker_id=worker_id,
                        started_at=now,
                        heartbeat_at=now,
                        finished_at=None,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                row = session.get(RuntimeEvent, event_id)
                view = _to_event_view(row)  # type: ignore[arg-type]
                session.commit()
                return view
        return None

    def complete_event(self, *, event_id: str) -> bool:
        return self._finish_event(
            event_id=event_id,
            status=RuntimeEventStatus.COMPLETED,
            error=None,
        )

    def fail_event(self, *, event_id: str, error: str) -> bool:
        return self._finish_event(event_id=event_id, status=RuntimeEventStatus.FAILED, error=error)

    def requeue_event(self, *, event_id: str, run_after: datetime, error: str | None) -> bool:
        """Put a running event back in the queue keeping its run id."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(RuntimeEvent)
                .where(
                    col(RuntimeEvent.event_id) == event_id,
                    col(RuntimeEvent.status) == RuntimeEventStatus.RUNNING.value,
                )
                .values(
                    status=RuntimeEventStatus.QUEUED.value,
                    run_after=to_db_datetime(run_after),
                    worker_id=None,
                    error=error,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
            return result.rowcount == 1

    def touch_event(self, *, event_id: str, worker_id: str) -> bool:
        """Refresh the heartbeat of an event this worker still holds."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(RuntimeEvent)
                .where(
                    col(RuntimeEvent.event_id) == event_id,
                    col(RuntimeEvent.status) == RuntimeEventStatus.RUNNING.value,
                    col(RuntimeEvent.worker_id) == worker_id,
                )
                .values(heartbeat_at=now, updated_at=now),
            )
            session.commit()
            return result.rowcount == 1

    def recover_stale_events(self, *, stale_before: datetime) -> int:
        """Requeue running events whose heartbeat went quiet; their steps replay on resume."""

        now = to_db_datetime(utc_now())
        last_seen = func.coalesce(RuntimeEvent.heartbeat_at, RuntimeEvent.started_at)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(RuntimeEvent)
                .where(
                    col(RuntimeEvent.status) == RuntimeEventStatus.RUNNING.value,
                    last_seen < to_db_datetime(stale_before),
                )
                .values(
                    status=RuntimeEventStatus.QUEUED.value,
                    run_after=now,
                    worker_id=None,
                    error="Recovered stale running event.",
                    updated_at=now,
                ),
            )
            session.commit()
            return result.rowcount

    def _finish_event(
        self,
        *,
        event_id: str,
        status: RuntimeEventStatus,
        error: str | None,
    ) -> bool:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(RuntimeEvent)
                .where(
                    col(RuntimeEvent.event_id) == event_id,
                    col(RuntimeEvent.status) == RuntimeEventStatus.RUNNING.value,
                )
                .values(status=status.value, error=error, finished_at=now, updated_at=now),
            )
            session.commit()
            return result.rowcount == 1

    def get_event(self, *, event_id: str) -> RuntimeEventView | None:
        with Session(self.engine) as session:
            row = session.get(RuntimeEvent, event_id)
            return _to_event_view(row) if row is not None else None

    def list_events(
        self,
        *,
        name: str | None = None,
        status: RuntimeEventStatus | None = None,
        limit: int = 100,
    ) -> list[RuntimeEventView]:
        statement = select(RuntimeEvent)
        if name is not None:
            statement = statement.where(RuntimeEvent.name == name)
        if status is not None:
            statement = statement.where(RuntimeEvent.status == status.value)
        statement = statement.order_by(col(RuntimeEvent.created_at).asc()).limit(limit)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_event_view(row) for row in rows]


def _dump_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _load_json(raw: str | None) -> Any:
    if not raw:
        return None
    return json.loads(raw)


def _optional_datetime(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_workspace_view(row: Workspace) -> WorkspaceView:
    soul_payload = _load_json(row.soul_json)
    return WorkspaceView(
        workspace_id=row.id,
        name=row.name,
        owner_id=row.owner_id,
        soul=WorkspaceSoul.from_payload(soul_payload) if isinstance(soul_payload, dict) else None,
        brand_summary=row.brand_summary,
    )


def _to_issue_view(row: Issue) -> IssueView:
    return IssueView(
        issue_id=row.id,
        workspace_id=row.workspace_id,
        identifier=row.identifier,
        title=row.title,
        description=row.description,
        status=row.status,
        parent_issue_id=row.parent_issue_id,
        position=row.position,
        ai_assignable=bool(row.ai_assignable),
        ai_instructions=row.ai_instructions,
        ai_execution_status=(
            AiExecutionStatus(row.ai_execution_status)
            if row.ai_execution_status is not None
            else None
        ),
        ai_job_id=row.ai_job_id,
        ai_execution_result=row.ai_execution_result,
        ai_execution_summary=row.ai_execution_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_attachment_view(row: Attachment) -> AttachmentView:
    return AttachmentView(
        attachment_id=row.id,
        issue_id=row.issue_id,
        filename=row.filename,
        storage_key=row.storage_key,
        mime_type=row.mime_type,
        size_bytes=row.size_bytes,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_job_view(row: BackgroundJob) -> JobView:
    metadata = _load_json(row.metadata_json)
    return JobView(
        job_id=row.id,
        workspace_id=row.workspace_id,
        function_id=row.function_id,
        function_name=row.function_name,
        run_id=row.run_id,
        correlation_id=row.correlation_id,
        status=JobStatus(row.status),
        started_at=_optional_datetime(row.started_at),
        completed_at=_optional_datetime(row.completed_at),
        metadata=metadata if isinstance(metadata, dict) else {},
        result=_load_json(row.result_json),
        error=row.error,
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_usage_view(row: TokenUsage) -> TokenUsageView:
    return TokenUsageView(
        usage_id=row.id,
        workspace_id=row.workspace_id,
        model=row.model,
        input_tokens=row.input_tokens,
        output_tokens=row.output_tokens,
        total_tokens=row.total_tokens,
        cache_creation_input_tokens=row.cache_creation_input_tokens,
        cache_read_input_tokens=row.cache_read_input_tokens,
        cost_cents=row.cost_cents,
        source=row.source,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_subscription_view(row: Subscription) -> SubscriptionView:
    return SubscriptionView(
        owner_id=row.owner_id,
        tokens_remaining=row.tokens_remaining,
        has_payment_method=bool(row.has_payment_method),
        auto_reload_enabled=bool(row.auto_reload_enabled),
        auto_reload_threshold=row.auto_reload_threshold,
        auto_reload_amount=row.auto_reload_amount,
        max_monthly_auto_reload=row.max_monthly_auto_reload,
        monthly_auto_reloaded_so_far=row.monthly_auto_reloaded_so_far,
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_event_view(row: RuntimeEvent) -> RuntimeEventView:
    payload = _load_json(row.payload_json)
    return RuntimeEventView(
        event_id=row.event_id,
        name=row.name,
        run_id=row.run_id,
        payload=payload if isinstance(payload, dict) else {},
        status=RuntimeEventStatus(row.status),
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        run_after=to_utc_aware_datetime(row.run_after),
        worker_id=row.worker_id,
        error=row.error,
        created_at=to_utc_aware_datetime(row.created_at),
        heartbeat_at=_optional_datetime(row.heartbeat_at),
    )
