"""Background job tracking driven by runtime lifecycle events."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from auto_kanban.orchestrator.models import JobCreate, JobStatus, JobView
from auto_kanban.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)

TRACKER_FUNCTION_PREFIX = "job-tracker-"

FUNCTION_INVOKED_EVENT = "runtime/function.invoked"
FUNCTION_FINISHED_EVENT = "runtime/function.finished"
FUNCTION_FAILED_EVENT = "runtime/function.failed"
LIFECYCLE_EVENTS = (FUNCTION_INVOKED_EVENT, FUNCTION_FINISHED_EVENT, FUNCTION_FAILED_EVENT)


def is_tracked_function(function_id: str) -> bool:
    """Tracker functions never track themselves."""

    return not function_id.startswith(TRACKER_FUNCTION_PREFIX)


class JobTracker:
    """Maintains one background job row per function run.

    Every write is idempotent: creation is insert-if-absent by run id and the
    terminal transitions only apply to rows that are still pending/running, so
    lifecycle events replayed by retries leave earlier outcomes untouched.
    """

    def __init__(self, *, repository: OrchestratorRepository) -> None:
        self.repository = repository

    def on_invoked(  # noqa: PLR0913
        self,
        *,
        run_id: str,
        function_id: str,
        function_name: str,
        workspace_id: str | None,
        correlation_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        attempt: int = 1,
        max_attempts: int = 1,
    ) -> bool:
        if not is_tracked_function(function_id) or not workspace_id:
            return False
        created = self.repository.create_job(
            JobCreate(
                workspace_id=workspace_id,
                function_id=function_id,
                function_name=function_name,
                run_id=run_id,
                status=JobStatus.PENDING,
                correlation_id=correlation_id,
                metadata=dict(metadata or {}),
                attempt=attempt,
                max_attempts=max_attempts,
            ),
        )
        started = self.repository.start_job(run_id=run_id, attempt=attempt)
        return created or started

    def on_finished(self, *, run_id: str, function_id: str, result: Any = None) -> bool:
        if not is_tracked_function(function_id):
            return False
        return self.repository.complete_job(run_id=run_id, result=result)

    def on_failed(self, *, run_id: str, function_id: str, error: str) -> bool:
        if not is_tracked_function(function_id):
            return False
        changed = self.repository.fail_job(run_id=run_id, error=error)
        if changed:
            logger.info("Job %s (%s) failed: %s", run_id, function_id, error)
        return changed

    def handle_event(self, name: str, payload: Mapping[str, Any]) -> bool:
        """Apply one lifecycle event; unknown names and tracker functions are ignored."""

        function_id = str(payload.get("functionId", ""))
        run_id = str(payload.get("runId", ""))
        if not run_id or not is_tracked_function(function_id):
            return False
        if name == FUNCTION_INVOKED_EVENT:
            return self.on_invoked(
                run_id=run_id,
                function_id=function_id,
                function_name=str(payload.get("functionName") or function_id),
                workspace_id=payload.get("workspaceId"),
                correlation_id=payload.get("correlationId"),
                metadata=payload.get("metadata"),
                attempt=int(payload.get("attempt", 1)),
                max_attempts=int(payload.get("maxAttempts", 1)),
            )
        if name == FUNCTION_FINISHED_EVENT:
            return self.on_finished(
                run_id=run_id,
                function_id=function_id,
                result=payload.get("result"),
            )
        if name == FUNCTION_FAILED_EVENT:
            return self.on_failed(
                run_id=run_id,
                function_id=function_id,
                error=str(payload.get("error") or "Unknown error"),
            )
        return False

    def get(self, *, run_id: str) -> JobView | None:
        return self.repository.get_job(run_id=run_id)
