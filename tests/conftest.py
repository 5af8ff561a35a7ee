"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from auto_kanban.orchestrator.attachments import FilesystemAttachmentStore
from auto_kanban.orchestrator.backend import (
    BackendCallError,
    LlmRequest,
    LlmResponse,
    LlmUsage,
)
from auto_kanban.orchestrator.dispatcher import EventDispatcher, build_default_functions
from auto_kanban.orchestrator.engine import ExecutionEngine
from auto_kanban.orchestrator.functions import OrchestrationDeps
from auto_kanban.orchestrator.job_tracker import JobTracker
from auto_kanban.orchestrator.metering import UsageMeter
from auto_kanban.orchestrator.models import IssueView, WorkspaceSoul, WorkspaceView
from auto_kanban.orchestrator.repository import IssueCreate, OrchestratorRepository

TEST_MODEL = "claude-haiku-4-5-20251001"
OWNER_ID = "owner-1"


class ScriptedBackend:
    """Backend that answers per subtask title and records every request."""

    def __init__(
        self,
        *,
        failures: set[str] | None = None,
        empty: set[str] | None = None,
        usage: LlmUsage | None = None,
    ) -> None:
        self.failures = failures or set()
        self.empty = empty or set()
        self.usage = usage or LlmUsage(input_tokens=1_000, output_tokens=500)
        self.requests: list[LlmRequest] = []

    def complete(self, request: LlmRequest) -> LlmResponse:
        self.requests.append(request)
        title = subtask_title(request)
        if title in self.failures:
            raise BackendCallError(f"model unavailable for {title}", status_code=529)
        text = "" if title in self.empty else f"Output for {title}"
        return LlmResponse(text=text, usage=self.usage)

    def dynamic_prompts(self) -> list[str]:
        return [request.system_segments[-1].text for request in self.requests]


def subtask_title(request: LlmRequest) -> str:
    dynamic = request.system_segments[-1].text
    for line in dynamic.splitlines():
        if line.startswith("**Title:** "):
            return line.removeprefix("**Title:** ")
    return ""


@dataclass(slots=True)
class Board:
    """Seeded workspace with one parent and its AI subtasks."""

    workspace: WorkspaceView
    parent: IssueView
    subtasks: list[IssueView] = field(default_factory=list)

    @property
    def subtask_ids(self) -> list[str]:
        return [subtask.issue_id for subtask in self.subtasks]


def seed_board(
    repository: OrchestratorRepository,
    *,
    titles: tuple[str, ...] = ("Research", "Draft", "Review"),
    soul: WorkspaceSoul | None = None,
    owner_id: str = OWNER_ID,
) -> Board:
    workspace = repository.create_workspace(
        name="Acme",
        owner_id=owner_id,
        soul=soul,
        brand_summary="Acme sells rockets.",
    )
    parent = repository.create_issue(
        IssueCreate(
            workspace_id=workspace.workspace_id,
            identifier="ACME-1",
            title="Launch campaign",
            description="Plan the spring launch.",
        ),
    )
    subtasks = [
        repository.create_issue(
            IssueCreate(
                workspace_id=workspace.workspace_id,
                identifier=f"ACME-{index + 2}",
                title=title,
                parent_issue_id=parent.issue_id,
                position=index,
                ai_assignable=True,
                ai_instructions=f"Focus on {title.lower()}.",
            ),
        )
        for index, title in enumerate(titles)
    ]
    return Board(workspace=workspace, parent=parent, subtasks=subtasks)


def build_deps(
    repository: OrchestratorRepository,
    backend: ScriptedBackend,
    attachments_root: Path,
) -> OrchestrationDeps:
    return OrchestrationDeps(
        repository=repository,
        engine=ExecutionEngine(backend=backend, model=TEST_MODEL),
        meter=UsageMeter(repository=repository),
        store=FilesystemAttachmentStore(attachments_root),
    )


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[OrchestratorRepository]:
    repo = OrchestratorRepository(tmp_path / "auto_kanban.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def board(repository: OrchestratorRepository) -> Board:
    return seed_board(repository)


@pytest.fixture()
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture()
def deps(
    repository: OrchestratorRepository,
    backend: ScriptedBackend,
    tmp_path: Path,
) -> OrchestrationDeps:
    return build_deps(repository, backend, tmp_path / "attachments")


def build_test_dispatcher(deps: OrchestrationDeps, **overrides) -> EventDispatcher:
    options = {"worker_id": "test-worker", "retry_delay_seconds": 0, "poll_interval_seconds": 0}
    options.update(overrides)
    return EventDispatcher(
        repository=deps.repository,
        functions=build_default_functions(deps),
        job_tracker=JobTracker(repository=deps.repository),
        **options,
    )
