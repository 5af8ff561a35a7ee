"""CLI entrypoint for auto-kanban."""

from pathlib import Path

import rich_click as click

from auto_kanban import __version__
from auto_kanban.orchestrator.controllers import (
    BillingBalanceCommand,
    JobMutateCommand,
    JobsListCommand,
    OrchestratorCliController,
    TaskExecuteAllCommand,
    TaskExecuteCommand,
    TaskStatusCommand,
    UsageCommand,
    WorkerRunCommand,
)

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()


@click.group()
@click.version_option(version=__version__, prog_name="auto-kanban")
def auto_kanban() -> None:
    """AI subtask orchestration and token metering CLI."""


@auto_kanban.group()
def tasks() -> None:
    """Queue AI subtask execution."""


@tasks.command("execute")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--issue-id", required=True, help="Subtask issue id.")
def tasks_execute(db_path: Path | None, issue_id: str) -> None:
    """Queue one AI-assignable subtask."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.execute_task(
            TaskExecuteCommand(db_path=db_path, issue_id=issue_id),
        ),
    )


@tasks.command("execute-all")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--parent-issue-id", required=True, help="Parent issue id.")
def tasks_execute_all(db_path: Path | None, parent_issue_id: str) -> None:
    """Queue every runnable AI subtask of a parent as one sequential chain."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.execute_all(
            TaskExecuteAllCommand(db_path=db_path, parent_issue_id=parent_issue_id),
        ),
    )


@tasks.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--issue-id", required=True, help="Subtask issue id.")
def tasks_status(db_path: Path | None, issue_id: str) -> None:
    """Show AI execution status of one subtask."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.task_status(
            TaskStatusCommand(db_path=db_path, issue_id=issue_id),
        ),
    )


@auto_kanban.group()
def worker() -> None:
    """Runtime event dispatcher."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-events",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed events in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_events: int | None,
    max_idle_polls: int,
) -> None:
    """Run the dispatcher."""

    try:
        lines = ORCHESTRATOR_CONTROLLER.run_worker(
            WorkerRunCommand(
                db_path=db_path,
                once=once,
                max_events=max_events,
                max_idle_polls=max_idle_polls,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@auto_kanban.group()
def jobs() -> None:
    """Background job records."""


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--workspace-id", default=None, help="Optional workspace filter.")
@click.option(
    "--status",
    type=click.Choice(
        ["pending", "running", "completed", "failed", "cancelled"],
        case_sensitive=False,
    ),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(
    db_path: Path | None,
    workspace_id: str | None,
    status: str | None,
    limit: int,
) -> None:
    """List background jobs, newest first."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.list_jobs(
            JobsListCommand(
                db_path=db_path,
                workspace_id=workspace_id,
                status=status,
                limit=limit,
            ),
        ),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--run-id", required=True, help="Run id.")
def jobs_inspect(db_path: Path | None, run_id: str) -> None:
    """Inspect one job with its memoized steps."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.inspect_job(JobMutateCommand(db_path=db_path, run_id=run_id)),
    )


@jobs.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--run-id", required=True, help="Run id.")
def jobs_cancel(db_path: Path | None, run_id: str) -> None:
    """Mark a pending/running job cancelled."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.cancel_job(JobMutateCommand(db_path=db_path, run_id=run_id)),
    )


@auto_kanban.group()
def usage() -> None:
    """Token usage reports."""


@usage.command("summary")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--workspace-id", required=True, help="Workspace id.")
def usage_summary(db_path: Path | None, workspace_id: str) -> None:
    """Show usage totals by model and source."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.usage_summary(
            UsageCommand(db_path=db_path, workspace_id=workspace_id),
        ),
    )


@usage.command("daily")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--workspace-id", required=True, help="Workspace id.")
@click.option(
    "--days",
    type=click.IntRange(min=1, max=365),
    default=30,
    show_default=True,
    help="Window size in days.",
)
def usage_daily(db_path: Path | None, workspace_id: str, days: int) -> None:
    """Show per-day usage, zero-filled."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.usage_daily(
            UsageCommand(db_path=db_path, workspace_id=workspace_id, days=days),
        ),
    )


@auto_kanban.group()
def billing() -> None:
    """Owner token balances."""


@billing.command("balance")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--owner-id", required=True, help="Workspace owner id.")
def billing_balance(db_path: Path | None, owner_id: str) -> None:
    """Show an owner's token balance, creating the free plan if missing."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.owner_balance(
            BillingBalanceCommand(db_path=db_path, owner_id=owner_id),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    auto_kanban()
