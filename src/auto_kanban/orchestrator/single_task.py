"""Single AI subtask execution as a checkpointed durable function."""

from __future__ import annotations

import logging
from typing import Any

from auto_kanban.orchestrator.attachments import attach_content, output_filename
from auto_kanban.orchestrator.engine import ExecutionResult
from auto_kanban.orchestrator.functions import OrchestrationDeps
from auto_kanban.orchestrator.models import (
    AiExecutionStatus,
    JobCreate,
    JobStatus,
    RuntimeEventView,
    TokenUsageWrite,
    WorkspaceSoul,
)
from auto_kanban.orchestrator.prompts import ParentContext, build_system_prompt
from auto_kanban.orchestrator.runtime import NonRetriableError, StepRuntime

logger = logging.getLogger(__name__)

AI_TASK_EVENT = "ai/task.execute"
AI_TASK_FUNCTION_ID = "ai-task-execution"
AI_TASK_FUNCTION_NAME = "AI Task Execution"
AI_TASK_RETRIES = 1
AI_TASK_CONCURRENCY = 5
USAGE_SOURCE = "ai-task-execution"

COMPLETED_SUMMARY = "Task completed. Output saved as {target}."
NO_CONTENT_SUMMARY = "Task failed - no content generated."


def execute_ai_task(
    event: RuntimeEventView,
    runtime: StepRuntime,
    deps: OrchestrationDeps,
) -> dict[str, Any]:
    """Execute one subtask: load, run model, meter, attach, finalize."""

    issue_id = str(event.payload["issueId"])
    workspace_id = str(event.payload["workspaceId"])
    parent_issue_id = event.payload.get("parentIssueId")

    context = runtime.run(
        "load-context",
        lambda: _load_context(
            deps=deps,
            run_id=runtime.run_id,
            issue_id=issue_id,
            workspace_id=workspace_id,
            parent_issue_id=parent_issue_id,
        ),
    )
    subtask = context["subtask"]

    execution = ExecutionResult.from_payload(
        runtime.run("execute-ai", lambda: _execute(deps=deps, context=context).to_payload()),
    )

    runtime.run(
        "track-usage",
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
        "save-attachment",
        lambda: save_output_attachment(
            deps=deps,
            workspace_id=workspace_id,
            issue_id=context.get("parentIssueId") or issue_id,
            identifier=subtask["identifier"],
            content=execution.content,
            source=USAGE_SOURCE,
        ),
    )

    return runtime.run(
        "finalize",
        lambda: _finalize(
            deps=deps,
            run_id=runtime.run_id,
            subtask=subtask,
            content=execution.content,
            attachment=attachment,
        ),
    )


def on_ai_task_failure(event: RuntimeEventView, error: Exception, deps: OrchestrationDeps) -> None:
    """Mark the subtask and job failed once retries are exhausted."""

    issue_id = str(event.payload.get("issueId", ""))
    message = str(error) or type(error).__name__
    logger.error("AI task %s failed for run %s: %s", issue_id, event.run_id, message)
    deps.repository.finalize_subtask(
        issue_id=issue_id,
        status=AiExecutionStatus.FAILED,
        result=None,
        summary=f"Execution failed: {message}",
    )
    deps.repository.fail_job(run_id=event.run_id, error=message)


def _load_context(
    *,
    deps: OrchestrationDeps,
    run_id: str,
    issue_id: str,
    workspace_id: str,
    parent_issue_id: str | None,
) -> dict[str, Any]:
    repository = deps.repository
    subtask = repository.get_issue(issue_id=issue_id)
    if subtask is None:
        raise NonRetriableError(f"Subtask not found: {issue_id}")
    if not subtask.ai_assignable:
        raise NonRetriableError(f"Subtask is not AI-assignable: {issue_id}")

    parent_id = parent_issue_id or subtask.parent_issue_id
    parent = repository.get_issue(issue_id=parent_id) if parent_id else None
    workspace = repository.get_workspace(workspace_id=workspace_id)

    repository.create_job(
        JobCreate(
            workspace_id=workspace_id,
            function_id=AI_TASK_FUNCTION_ID,
            function_name=AI_TASK_FUNCTION_NAME,
            run_id=run_id,
            status=JobStatus.RUNNING,
            metadata={
                "issueId": issue_id,
                "parentIssueId": parent_id,
                "subtaskTitle": subtask.title,
                "subtaskIdentifier": subtask.identifier,
            },
            attempt=1,
            max_attempts=AI_TASK_RETRIES + 1,
        ),
    )
    repository.set_ai_execution_status(
        issue_ids=[issue_id],
        status=AiExecutionStatus.RUNNING,
        job_id=run_id,
    )

    return {
        "subtask": {
            "id": subtask.issue_id,
            "identifier": subtask.identifier,
            "title": subtask.title,
            "description": subtask.description,
            "aiInstructions": subtask.ai_instructions,
            "status": subtask.status,
        },
        "parent": (
            {
                "identifier": parent.identifier,
                "title": parent.title,
                "description": parent.description,
            }
            if parent is not None
            else None
        ),
        "parentIssueId": parent.issue_id if parent is not None else None,
        "soul": workspace.soul.to_payload() if workspace and workspace.soul else None,
        "brandSummary": workspace.brand_summary if workspace else None,
        "ownerId": workspace.owner_id if workspace else None,
    }


def _execute(*, deps: OrchestrationDeps, context: dict[str, Any]) -> ExecutionResult:
    subtask = context["subtask"]
    parent = context.get("parent")
    soul = context.get("soul")
    prompt = build_system_prompt(
        ParentContext(**parent) if parent else None,
        subtask["title"],
        subtask.get("description"),
        subtask.get("aiInstructions"),
        soul=WorkspaceSoul.from_payload(soul) if soul else None,
        brand_summary=context.get("brandSummary"),
    )
    return deps.engine.execute(prompt)


def track_execution_usage(  # noqa: PLR0913
    *,
    deps: OrchestrationDeps,
    runtime: StepRuntime,
    workspace_id: str,
    owner_id: str | None,
    execution: ExecutionResult,
    source: str,
) -> dict[str, Any]:
    usage = execution.usage
    record = deps.meter.record(
        TokenUsageWrite(
            workspace_id=workspace_id,
            model=deps.engine.model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cache_creation_input_tokens=usage.cache_creation_input_tokens,
            cache_read_input_tokens=usage.cache_read_input_tokens,
            source=source,
        ),
        owner_id=owner_id,
        runtime=runtime,
    )
    return {
        "usageId": record.usage.usage_id,
        "totalTokens": record.usage.total_tokens,
        "costCents": record.usage.cost_cents,
        "autoReloadRequested": record.auto_reload_requested,
    }


def save_output_attachment(  # noqa: PLR0913
    *,
    deps: OrchestrationDeps,
    workspace_id: str,
    issue_id: str,
    identifier: str,
    content: str,
    source: str,
) -> dict[str, Any]:
    """Attach generated output; store failures degrade to ``attached: false``."""

    if not content.strip():
        return {"attached": False, "reason": "No content"}
    filename = output_filename(identifier)
    try:
        attachment = attach_content(
            store=deps.store,
            repository=deps.repository,
            workspace_id=workspace_id,
            issue_id=issue_id,
            filename=filename,
            content=content,
            source=source,
        )
    except Exception as error:  # noqa: BLE001
        logger.warning("Failed to attach %s to issue %s: %s", filename, issue_id, error)
        return {"attached": False, "reason": str(error) or type(error).__name__}
    return {"attached": True, "attachmentId": attachment.attachment_id, "filename": filename}


def completion_summary(*, has_content: bool, attached: bool) -> str:
    if not has_content:
        return NO_CONTENT_SUMMARY
    return COMPLETED_SUMMARY.format(target="attachment" if attached else "text")


def _finalize(
    *,
    deps: OrchestrationDeps,
    run_id: str,
    subtask: dict[str, Any],
    content: str,
    attachment: dict[str, Any],
) -> dict[str, Any]:
    has_content = bool(content.strip())
    status = AiExecutionStatus.COMPLETED if has_content else AiExecutionStatus.FAILED
    attached = bool(attachment.get("attached"))
    summary = completion_summary(has_content=has_content, attached=attached)

    deps.repository.finalize_subtask(
        issue_id=subtask["id"],
        status=status,
        result={"content": content},
        summary=summary,
        board_status="done" if has_content else None,
    )
    job_result = {
        "summary": summary,
        "attached": attached,
        "attachmentId": attachment.get("attachmentId"),
    }
    if has_content:
        deps.repository.complete_job(run_id=run_id, result=job_result)
    else:
        deps.repository.fail_job(run_id=run_id, error=summary, result=job_result)
    return {"status": status.value, "summary": summary, "attached": attached}
