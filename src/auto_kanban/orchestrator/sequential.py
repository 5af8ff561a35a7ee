"""Sequential chain execution: each subtask sees digests of earlier completed ones.

Every per-subtask side effect lives in a named step, so a resumed chain replays
finished subtasks from memoized outcomes and rebuilds the same digest list
without calling the model again. A model failure is captured inside the
``execute-subtask-{k}`` step and turned into a failed outcome; the loop moves
on to the next subtask.
"""

from __future__ import annotations

import logging
from typing import Any

from auto_kanban.orchestrator.engine import ExecutionResult
from auto_kanban.orchestrator.functions import OrchestrationDeps
from auto_kanban.orchestrator.models import (
    AiExecutionStatus,
    JobCreate,
    JobStatus,
    PreviousTaskResult,
    RuntimeEventView,
    SubtaskFailed,
    SubtaskOutcome,
    SubtaskSucceeded,
    WorkspaceSoul,
    outcome_from_payload,
)
from auto_kanban.orchestrator.prompts import (
    ParentContext,
    build_system_prompt,
    previous_results_from_outcomes,
    truncate_summary,
)
from auto_kanban.orchestrator.runtime import NonRetriableError, StepRuntime
from auto_kanban.orchestrator.single_task import (
    completion_summary,
    save_output_attachment,
    track_execution_usage,
)

logger = logging.getLogger(__name__)

SEQUENTIAL_EVENT = "ai/tasks.executeSequential"
SEQUENTIAL_FUNCTION_ID = "ai-tasks-sequential"
SEQUENTIAL_FUNCTION_NAME = "Sequential AI Task Execution"
SEQUENTIAL_RETRIES = 1
SEQUENTIAL_CONCURRENCY = 3
USAGE_SOURCE = "ai-tasks-sequential"


def execute_sequential_ai_tasks(
    event: RuntimeEventView,
    runtime: StepRuntime,
    deps: OrchestrationDeps,
) -> dict[str, Any]:
    """Run the chain in order under one job row."""

    parent_issue_id = str(event.payload["parentIssueId"])
    workspace_id = str(event.payload["workspaceId"])
    subtask_ids = [str(value) for value in event.payload.get("subtaskIds", [])]

    context = runtime.run(
        "load-context",
        lambda: _load_chain_context(
            deps=deps,
            run_id=runtime.run_id,
            parent_issue_id=parent_issue_id,
            workspace_id=workspace_id,
            subtask_ids=subtask_ids,
        ),
    )

    outcomes: list[SubtaskOutcome] = []
    for index, subtask in enumerate(context["subtasks"]):
        previous_results = previous_results_from_outcomes(outcomes)
        outcome = _run_subtask(
            index=index,
            subtask=subtask,
            context=context,
            previous_results=previous_results,
            workspace_id=workspace_id,
            runtime=runtime,
            deps=deps,
        )
        outcomes.append(outcome)

    return runtime.run(
        "finalize-chain",
        lambda: _finalize_chain(deps=deps, run_id=runtime.run_id, outcomes=outcomes),
    )


def on_sequential_failure(
    event: RuntimeEventView,
    error: Exception,
    deps: OrchestrationDeps,
) -> None:
    """Fail the job and every chain subtask that never reached a terminal state."""

    message = str(error) or type(error).__name__
    subtask_ids = [str(value) for value in event.payload.get("subtaskIds", [])]
    logger.error(
        "Sequential chain for parent %s failed (run %s): %s",
        event.payload.get("parentIssueId"),
        event.run_id,
        message,
    )
    deps.repository.fail_unfinished_subtasks(
        issue_ids=subtask_ids,
        summary=f"Execution failed: {message}",
    )
    deps.repository.fail_job(run_id=event.run_id, error=message)


def _load_chain_context(
    *,
    deps: OrchestrationDeps,
    run_id: str,
    parent_issue_id: str,
    workspace_id: str,
    subtask_ids: list[str],
) -> dict[str, Any]:
    repository = deps.repository
    parent = repository.get_issue(issue_id=parent_issue_id)
    if parent is None:
        raise NonRetriableError(f"Parent issue not found: {parent_issue_id}")
    workspace = repository.get_workspace(workspace_id=workspace_id)

    subtasks: list[dict[str, Any]] = []
    skipped: list[str] = []
    for subtask_id in subtask_ids:
        issue = repository.get_issue(issue_id=subtask_id)
        if issue is None or not issue.ai_assignable:
            skipped.append(subtask_id)
            continue
        subtasks.append(
            {
                "id": issue.issue_id,
                "identifier": issue.identifier,
                "title": issue.title,
                "description": issue.description,
                "aiInstructions": issue.ai_instructions,
            },
        )
    if skipped:
        logger.warning("Skipping missing or non-assignable subtasks: %s", ", ".join(skipped))
        repository.clear_pending_ai_status(issue_ids=skipped)

    repository.create_job(
        JobCreate(
            workspace_id=workspace_id,
            function_id=SEQUENTIAL_FUNCTION_ID,
            function_name=SEQUENTIAL_FUNCTION_NAME,
            run_id=run_id,
            status=JobStatus.RUNNING,
            metadata={
                "parentIssueId": parent_issue_id,
                "subtaskIds": [subtask["id"] for subtask in subtasks],
                "skippedSubtaskIds": skipped,
                "total": len(subtasks),
            },
            attempt=1,
            max_attempts=SEQUENTIAL_RETRIES + 1,
        ),
    )

    return {
        "parent": {
            "identifier": parent.identifier,
            "title": parent.title,
            "description": parent.description,
        },
        "parentIssueId": parent.issue_id,
        "subtasks": subtasks,
        "soul": workspace.soul.to_payload() if workspace and workspace.soul else None,
        "brandSummary": workspace.brand_summary if workspace else None,
        "ownerId": workspace.owner_id if workspace else None,
    }


def _run_subtask(  # noqa: PLR0913
    *,
    index: int,
    subtask: dict[str, Any],
    context: dict[str, Any],
    previous_results: list[PreviousTaskResult],
    workspace_id: str,
    runtime: StepRuntime,
    deps: OrchestrationDeps,
) -> SubtaskOutcome:
    issue_id = subtask["id"]
    executed = runtime.run(
        f"execute-subtask-{index}",
        lambda: _execute_subtask(
            deps=deps,
            run_id=runtime.run_id,
            subtask=subtask,
            context=context,
            previous_results=previous_results,
        ),
    )
    if not executed["ok"]:
        return outcome_from_payload(
            runtime.run(
                f"fail-subtask-{index}",
                lambda: _fail_subtask(
                    deps=deps,
                    issue_id=issue_id,
                    reason=f"Execution failed: {executed['error']}",
                ),
            ),
        )

    execution = ExecutionResult.from_payload(executed["result"])
    runtime.run(
        f"track-usage-{index}",
        lambda: track_execution_usage(
            deps=deps,
            runtime=runtime,
            workspace_id=workspace_id,
            owner_id=context.get("ownerId"),
            execution=execution,
            source=USAGE_SOURCE,
        ),
    )
    attachment = runtime.run(
        f"save-attachment-{index}",
        lambda: save_output_attachment(
            deps=deps,
            workspace_id=workspace_id,
            issue_id=context["parentIssueId"],
            identifier=subtask["identifier"],
            content=execution.content,
            source=USAGE_SOURCE,
        ),
    )
    return outcome_from_payload(
        runtime.run(
            f"finalize-subtask-{index}",
            lambda: _finalize_subtask(
                deps=deps,
                subtask=subtask,
                content=execution.content,
                attached=bool(attachment.get("attached")),
            ),
        ),
    )


def _execute_subtask(
    *,
    deps: OrchestrationDeps,
    run_id: str,
    subtask: dict[str, Any],
    context: dict[str, Any],
    previous_results: list[PreviousTaskResult],
) -> dict[str, Any]:
    deps.repository.set_ai_execution_status(
        issue_ids=[subtask["id"]],
        status=AiExecutionStatus.RUNNING,
        job_id=run_id,
    )
    soul = context.get("soul")
    prompt = build_system_prompt(
        ParentContext(**context["parent"]),
        subtask["title"],
        subtask.get("description"),
        subtask.get("aiInstructions"),
        soul=WorkspaceSoul.from_payload(soul) if soul else None,
        brand_summary=context.get("brandSummary"),
        previous_results=previous_results,
    )
    try:
        result = deps.engine.execute(prompt)
    except Exception as error:  # noqa: BLE001
        logger.warning("Subtask %s execution failed: %s", subtask["identifier"], error)
        return {"ok": False, "error": str(error) or type(error).__name__}
    return {"ok": True, "result": result.to_payload()}


def _fail_subtask(*, deps: OrchestrationDeps, issue_id: str, reason: str) -> dict[str, Any]:
    deps.repository.finalize_subtask(
        issue_id=issue_id,
        status=AiExecutionStatus.FAILED,
        result=None,
        summary=reason,
    )
    return SubtaskFailed(issue_id=issue_id, reason=reason).to_payload()


def _finalize_subtask(
    *,
    deps: OrchestrationDeps,
    subtask: dict[str, Any],
    content: str,
    attached: bool,
) -> dict[str, Any]:
    has_content = bool(content.strip())
    summary = completion_summary(has_content=has_content, attached=attached)
    deps.repository.finalize_subtask(
        issue_id=subtask["id"],
        status=AiExecutionStatus.COMPLETED if has_content else AiExecutionStatus.FAILED,
        result={"content": content},
        summary=summary,
        board_status="done" if has_content else None,
    )
    if not has_content:
        return SubtaskFailed(issue_id=subtask["id"], reason=summary).to_payload()
    return SubtaskSucceeded(
        issue_id=subtask["id"],
        identifier=subtask["identifier"],
        title=subtask["title"],
        summary=truncate_summary(content, deps.previous_result_max_chars),
        attached=attached,
    ).to_payload()


def _finalize_chain(
    *,
    deps: OrchestrationDeps,
    run_id: str,
    outcomes: list[SubtaskOutcome],
) -> dict[str, Any]:
    completed = sum(1 for outcome in outcomes if isinstance(outcome, SubtaskSucceeded))
    failed = len(outcomes) - completed
    results: list[dict[str, Any]] = []
    for outcome in outcomes:
        match outcome:
            case SubtaskSucceeded():
                results.append(
                    {
                        "issueId": outcome.issue_id,
                        "identifier": outcome.identifier,
                        "status": AiExecutionStatus.COMPLETED.value,
                        "attached": outcome.attached,
                    },
                )
            case SubtaskFailed():
                results.append(
                    {
                        "issueId": outcome.issue_id,
                        "status": AiExecutionStatus.FAILED.value,
                        "reason": outcome.reason,
                    },
                )
    summary = {
        "total": len(outcomes),
        "completed": completed,
        "failed": failed,
        "results": results,
    }
    if completed > 0:
        deps.repository.complete_job(run_id=run_id, result=summary)
    else:
        deps.repository.fail_job(
            run_id=run_id,
            error=f"All {len(outcomes)} subtasks failed." if outcomes else "No subtasks to run.",
            result=summary,
        )
    return summary
