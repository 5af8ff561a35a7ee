"""Use-case services that validate requests and enqueue orchestration events."""

from __future__ import annotations

import json
from dataclasses import dataclass

from auto_kanban.orchestrator.models import AiExecutionStatus, AiTaskStatusView, IssueView
from auto_kanban.orchestrator.repository import OrchestratorRepository
from auto_kanban.orchestrator.sequential import SEQUENTIAL_EVENT, SEQUENTIAL_RETRIES
from auto_kanban.orchestrator.single_task import AI_TASK_EVENT, AI_TASK_RETRIES

RUNNABLE_STATUSES = (None, AiExecutionStatus.PENDING, AiExecutionStatus.FAILED)


class AiTaskPreconditionError(ValueError):
    """Request rejected before any side effect."""


@dataclass(slots=True)
class EnqueuedRun:
    """Queued orchestration run."""

    run_id: str
    event_name: str
    issue_ids: list[str]


class AiTaskService:
    """Entry point for requesting AI execution of subtasks."""

    def __init__(self, *, repository: OrchestratorRepository) -> None:
        self.repository = repository

    def execute_ai_task(self, issue_id: str) -> EnqueuedRun:
        """Queue a single subtask for execution."""

        subtask = self.repository.get_issue(issue_id=issue_id)
        if subtask is None:
            raise AiTaskPreconditionError(f"Issue not found: {issue_id}")
        if not subtask.ai_assignable:
            raise AiTaskPreconditionError(f"Issue is not AI-assignable: {subtask.identifier}")
        if not subtask.parent_issue_id:
            raise AiTaskPreconditionError(
                f"Issue is not a subtask (no parent issue): {subtask.identifier}",
            )
        self._require_workspace(subtask.workspace_id)

        self.repository.set_ai_execution_status(
            issue_ids=[issue_id],
            status=AiExecutionStatus.PENDING,
        )
        event = self.repository.enqueue_event(
            name=AI_TASK_EVENT,
            payload={
                "issueId": issue_id,
                "workspaceId": subtask.workspace_id,
                "parentIssueId": subtask.parent_issue_id,
            },
            max_attempts=AI_TASK_RETRIES + 1,
        )
        return EnqueuedRun(run_id=event.run_id, event_name=event.name, issue_ids=[issue_id])

    def execute_all_ai_tasks(self, parent_issue_id: str) -> EnqueuedRun | None:
        """Queue every runnable AI subtask of a parent as one sequential chain.

        Returns None when nothing is runnable.
        """

        parent = self.repository.get_issue(issue_id=parent_issue_id)
        if parent is None:
            raise AiTaskPreconditionError(f"Issue not found: {parent_issue_id}")
        self._require_workspace(parent.workspace_id)

        runnable = runnable_subtasks(
            self.repository.list_ai_subtasks(parent_issue_id=parent_issue_id),
        )
        if not runnable:
            return None
        subtask_ids = [subtask.issue_id for subtask in runnable]

        self.repository.set_ai_execution_status(
            issue_ids=subtask_ids,
            status=AiExecutionStatus.PENDING,
        )
        event = self.repository.enqueue_event(
            name=SEQUENTIAL_EVENT,
            payload={
                "parentIssueId": parent_issue_id,
                "workspaceId": parent.workspace_id,
                "subtaskIds": subtask_ids,
            },
            max_attempts=SEQUENTIAL_RETRIES + 1,
        )
        return EnqueuedRun(run_id=event.run_id, event_name=event.name, issue_ids=subtask_ids)

    def get_ai_task_status(self, issue_id: str) -> AiTaskStatusView:
        issue = self.repository.get_issue(issue_id=issue_id)
        if issue is None:
            raise AiTaskPreconditionError(f"Issue not found: {issue_id}")
        result = None
        if issue.ai_execution_result:
            try:
                result = json.loads(issue.ai_execution_result)
            except json.JSONDecodeError:
                result = issue.ai_execution_result
        return AiTaskStatusView(
            status=issue.ai_execution_status,
            result=result,
            summary=issue.ai_execution_summary,
        )

    def _require_workspace(self, workspace_id: str) -> None:
        if self.repository.get_workspace(workspace_id=workspace_id) is None:
            raise AiTaskPreconditionError(f"Workspace not found: {workspace_id}")


def runnable_subtasks(subtasks: list[IssueView]) -> list[IssueView]:
    """Subtasks never run, still pending, or failed, in position order."""

    selected = [
        subtask
        for subtask in subtasks
        if subtask.ai_assignable and subtask.ai_execution_status in RUNNABLE_STATUSES
    ]
    return sorted(selected, key=lambda subtask: subtask.position)
