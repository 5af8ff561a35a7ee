from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from conftest import Board, seed_board

from auto_kanban.config import OrchestratorSettings, Settings
from auto_kanban.main import auto_kanban
from auto_kanban.orchestrator.backend import EchoBackend
from auto_kanban.orchestrator.flows import build_dispatcher, dispatch_flow
from auto_kanban.orchestrator.repository import OrchestratorRepository
from auto_kanban.orchestrator.services import AiTaskService

pytestmark = [
    allure.epic("Operations"),
    allure.feature("CLI & Flows"),
]

_RUN_ID = re.compile(r"run_id=(\S+)")


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch) -> tuple[Path, Board]:
    db_path = tmp_path / "cli.db"
    monkeypatch.setenv("AUTO_KANBAN_LLM_BACKEND", "echo")
    monkeypatch.setenv("AUTO_KANBAN_ATTACHMENTS_ROOT", str(tmp_path / "attachments"))
    monkeypatch.setenv("AUTO_KANBAN_POLL_INTERVAL_SECONDS", "0")
    repository = OrchestratorRepository(db_path)
    repository.init_schema()
    board = seed_board(repository)
    repository.close()
    return db_path, board


def test_cli_execute_worker_status_and_jobs(cli_env: tuple[Path, Board]) -> None:
    db_path, board = cli_env
    runner = CliRunner()
    subtask_id = board.subtasks[0].issue_id

    queued = runner.invoke(
        auto_kanban,
        ["tasks", "execute", "--db-path", str(db_path), "--issue-id", subtask_id],
    )
    assert queued.exit_code == 0, queued.output
    assert "AI task queued" in queued.output
    match = _RUN_ID.search(queued.output)
    assert match is not None
    run_id = match.group(1)

    worker = runner.invoke(auto_kanban, ["worker", "run", "--db-path", str(db_path), "--loop"])
    assert worker.exit_code == 0, worker.output
    assert "processed=1 succeeded=1 failed=0" in worker.output

    status = runner.invoke(
        auto_kanban,
        ["tasks", "status", "--db-path", str(db_path), "--issue-id", subtask_id],
    )
    assert "AI status: completed" in status.output
    assert "Output saved as attachment" in status.output

    listed = runner.invoke(
        auto_kanban,
        ["jobs", "list", "--db-path", str(db_path), "--status", "completed"],
    )
    assert "Jobs: 1" in listed.output
    assert run_id in listed.output

    inspected = runner.invoke(
        auto_kanban,
        ["jobs", "inspect", "--db-path", str(db_path), "--run-id", run_id],
    )
    assert "Status: completed" in inspected.output
    assert "Steps: 5" in inspected.output
    assert "  save-attachment" in inspected.output

    cancelled = runner.invoke(
        auto_kanban,
        ["jobs", "cancel", "--db-path", str(db_path), "--run-id", run_id],
    )
    assert "not cancelled (missing or already terminal)" in cancelled.output

    usage = runner.invoke(
        auto_kanban,
        [
            "usage",
            "summary",
            "--db-path",
            str(db_path),
            "--workspace-id",
            board.workspace.workspace_id,
        ],
    )
    assert f"Token usage for workspace {board.workspace.workspace_id}" in usage.output
    assert "ai-task-execution requests=1" in usage.output

    daily = runner.invoke(
        auto_kanban,
        [
            "usage",
            "daily",
            "--db-path",
            str(db_path),
            "--workspace-id",
            board.workspace.workspace_id,
            "--days",
            "7",
        ],
    )
    assert "Daily usage (8 days)" in daily.output
    assert "requests=1" in daily.output


def test_cli_execute_all_and_rejections(cli_env: tuple[Path, Board]) -> None:
    db_path, board = cli_env
    runner = CliRunner()

    rejected = runner.invoke(
        auto_kanban,
        ["tasks", "execute", "--db-path", str(db_path), "--issue-id", board.parent.issue_id],
    )
    assert rejected.exit_code == 0
    assert "Rejected: Issue is not AI-assignable: ACME-1" in rejected.output

    chain = runner.invoke(
        auto_kanban,
        [
            "tasks",
            "execute-all",
            "--db-path",
            str(db_path),
            "--parent-issue-id",
            board.parent.issue_id,
        ],
    )
    assert "AI chain queued" in chain.output
    assert "subtasks=3" in chain.output

    again = runner.invoke(
        auto_kanban,
        [
            "tasks",
            "execute-all",
            "--db-path",
            str(db_path),
            "--parent-issue-id",
            board.parent.issue_id,
        ],
    )
    assert "No runnable AI subtasks" in again.output


def test_cli_worker_requires_api_key_for_anthropic(
    cli_env: tuple[Path, Board],
    monkeypatch,
) -> None:
    db_path, _ = cli_env
    monkeypatch.setenv("AUTO_KANBAN_LLM_BACKEND", "anthropic")
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)

    result = CliRunner().invoke(auto_kanban, ["worker", "run", "--db-path", str(db_path)])

    assert result.exit_code == 1
    assert "ANTHROPIC_API_KEY" in result.output


def test_dispatch_flow_drains_queue(cli_env: tuple[Path, Board], tmp_path: Path) -> None:
    db_path, board = cli_env
    repository = OrchestratorRepository(db_path)
    AiTaskService(repository=repository).execute_all_ai_tasks(board.parent.issue_id)
    repository.close()
    settings = Settings(
        db_path=db_path,
        orchestrator=OrchestratorSettings(
            backend="echo",
            attachments_root=tmp_path / "flow-attachments",
            poll_interval_seconds=0,
        ),
    )

    counters = dispatch_flow.fn(settings=settings, max_idle_polls=1)

    assert counters["processed"] == 1
    assert counters["succeeded"] == 1


def test_build_dispatcher_uses_configured_stale_window(tmp_path: Path) -> None:
    settings = Settings(
        db_path=tmp_path / "wiring.db",
        orchestrator=OrchestratorSettings(
            backend="echo",
            attachments_root=tmp_path / "wiring-attachments",
            stale_event_seconds=90,
        ),
    )
    repository = OrchestratorRepository(settings.db_path)

    dispatcher = build_dispatcher(settings=settings, repository=repository, backend=EchoBackend())

    assert dispatcher.stale_event_seconds == 90
    assert dispatcher.heartbeat_interval_seconds == 30
    repository.close()


def test_cli_billing_balance_grants_free_plan_once(
    cli_env: tuple[Path, Board],
    monkeypatch,
) -> None:
    db_path, board = cli_env
    monkeypatch.setenv("AUTO_KANBAN_FREE_PLAN_TOKENS", "25000")
    runner = CliRunner()
    args = [
        "billing",
        "balance",
        "--db-path",
        str(db_path),
        "--owner-id",
        board.workspace.owner_id,
    ]

    first = runner.invoke(auto_kanban, args)

    assert first.exit_code == 0, first.output
    assert f"Owner: {board.workspace.owner_id}" in first.output
    assert "Tokens remaining: 25000" in first.output
    assert "Auto-reload: disabled" in first.output

    repository = OrchestratorRepository(db_path)
    repository.deduct_tokens(owner_id=board.workspace.owner_id, tokens=5_000)
    repository.close()
    monkeypatch.setenv("AUTO_KANBAN_FREE_PLAN_TOKENS", "999999")

    second = runner.invoke(auto_kanban, args)

    assert "Tokens remaining: 20000" in second.output
