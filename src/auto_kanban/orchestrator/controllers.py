"""Controllers for orchestration CLI commands."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from auto_kanban.config import Settings
from auto_kanban.orchestrator.flows import build_dispatcher, open_repository
from auto_kanban.orchestrator.models import JobStatus
from auto_kanban.orchestrator.services import AiTaskPreconditionError, AiTaskService
from auto_kanban.orchestrator.usage_report import (
    build_daily_usage,
    build_usage_summary,
    render_daily_lines,
    render_usage_lines,
)
from auto_kanban.storage.common import utc_now


@dataclass(slots=True)
class TaskExecuteCommand:
    """CLI input for queueing one subtask."""

    db_path: Path | None
    issue_id: str


@dataclass(slots=True)
class TaskExecuteAllCommand:
    """CLI input for queueing every runnable subtask of a parent."""

    db_path: Path | None
    parent_issue_id: str


@dataclass(slots=True)
class TaskStatusCommand:
    db_path: Path | None
    issue_id: str


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for dispatcher execution."""

    db_path: Path | None
    once: bool
    max_events: int | None
    max_idle_polls: int = 1


@dataclass(slots=True)
class JobsListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    workspace_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobMutateCommand:
    """CLI input for job inspection/cancel."""

    db_path: Path | None
    run_id: str


@dataclass(slots=True)
class BillingBalanceCommand:
    """CLI input for owner balance lookup."""

    db_path: Path | None
    owner_id: str


@dataclass(slots=True)
class UsageCommand:
    """CLI input for workspace usage reports."""

    db_path: Path | None
    workspace_id: str
    days: int = 30


class OrchestratorCliController:
    """Coordinates enqueue, dispatcher, job and usage CLI operations."""

    def execute_task(self, command: TaskExecuteCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_repository(settings) as repository:
            try:
                run = AiTaskService(repository=repository).execute_ai_task(command.issue_id)
            except AiTaskPreconditionError as error:
                return [f"Rejected: {error}"]
        return [f"AI task queued: run_id={run.run_id} event={run.event_name}"]

    def execute_all(self, command: TaskExecuteAllCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_repository(settings) as repository:
            try:
                run = AiTaskService(repository=repository).execute_all_ai_tasks(
                    command.parent_issue_id,
                )
            except AiTaskPreconditionError as error:
                return [f"Rejected: {error}"]
        if run is None:
            return [f"No runnable AI subtasks under {command.parent_issue_id}"]
        return [
            f"AI chain queued: run_id={run.run_id} subtasks={len(run.issue_ids)}",
            *[f"  {issue_id}" for issue_id in run.issue_ids],
        ]

    def task_status(self, command: TaskStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_repository(settings) as repository:
            try:
                status = AiTaskService(repository=repository).get_ai_task_status(command.issue_id)
            except AiTaskPreconditionError as error:
                return [str(error)]
        return [
            f"Issue: {command.issue_id}",
            f"AI status: {status.status.value if status.status else '-'}",
            f"Summary: {status.summary or '-'}",
        ]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with open_repository(settings) as repository:
            dispatcher = build_dispatcher(settings=settings, repository=repository)
            summary = (
                dispatcher.run_once()
                if command.once
                else dispatcher.run_loop(
                    max_events=command.max_events,
                    max_idle_polls=command.max_idle_polls,
                )
            )
        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"idle_polls={summary.idle_polls}",
        ]

    def list_jobs(self, command: JobsListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        statuses = (JobStatus(command.status.lower()),) if command.status else ()
        with open_repository(settings) as repository:
            jobs = repository.list_jobs(
                workspace_id=command.workspace_id,
                statuses=statuses,
                limit=command.limit,
            )
        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            started = job.started_at.isoformat() if job.started_at else "-"
            lines.append(
                f"  {job.run_id} function={job.function_id} status={job.status.value} "
                f"attempt={job.attempt}/{job.max_attempts} started_at={started}",
            )
        return lines

    def inspect_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_repository(settings) as repository:
            job = repository.get_job(run_id=command.run_id)
            steps = repository.list_step_names(run_id=command.run_id)
        if job is None:
            return [f"Job not found: {command.run_id}"]
        return [
            f"Job: {job.run_id}",
            f"Function: {job.function_id} ({job.function_name})",
            f"Workspace: {job.workspace_id}",
            f"Status: {job.status.value}",
            f"Attempt: {job.attempt}/{job.max_attempts}",
            f"Started: {job.started_at.isoformat() if job.started_at else '-'}",
            f"Completed: {job.completed_at.isoformat() if job.completed_at else '-'}",
            f"Error: {job.error or '-'}",
            f"Metadata: {json.dumps(job.metadata, sort_keys=True)}",
            f"Result: {json.dumps(job.result, sort_keys=True) if job.result is not None else '-'}",
            f"Steps: {len(steps)}",
            *[f"  {step}" for step in steps],
        ]

    def cancel_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_repository(settings) as repository:
            changed = repository.cancel_job(run_id=command.run_id)
        if not changed:
            return [f"Job {command.run_id} not cancelled (missing or already terminal)."]
        return [f"Job cancelled: {command.run_id}"]

    def usage_summary(self, command: UsageCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_repository(settings) as repository:
            records = repository.list_token_usage(workspace_id=command.workspace_id)
        return render_usage_lines(
            summary=build_usage_summary(records),
            workspace_id=command.workspace_id,
        )

    def usage_daily(self, command: UsageCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        today = utc_now()
        with open_repository(settings) as repository:
            records = repository.list_token_usage(
                workspace_id=command.workspace_id,
                since=today - timedelta(days=command.days + 1),
            )
        return render_daily_lines(
            build_daily_usage(records, days=command.days, today=today.date()),
        )

    def owner_balance(self, command: BillingBalanceCommand) -> list[str]:
        """Show an owner's token balance, granting the free plan on first lookup."""

        settings = Settings.from_env(db_path=command.db_path)
        with open_repository(settings) as repository:
            subscription = repository.ensure_subscription(
                owner_id=command.owner_id,
                initial_tokens=settings.billing.free_plan_tokens,
            )
        if subscription.auto_reload_enabled:
            auto_reload = (
                f"enabled threshold={subscription.auto_reload_threshold} "
                f"amount={subscription.auto_reload_amount} "
                f"monthly_cap={subscription.max_monthly_auto_reload or '-'} "
                f"reloaded_this_month={subscription.monthly_auto_reloaded_so_far}"
            )
        else:
            auto_reload = "disabled"
        return [
            f"Owner: {subscription.owner_id}",
            f"Tokens remaining: {subscription.tokens_remaining}",
            f"Payment method: {'yes' if subscription.has_payment_method else 'no'}",
            f"Auto-reload: {auto_reload}",
        ]
