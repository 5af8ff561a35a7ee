"""Function registry shared by the dispatcher and the orchestration functions."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from auto_kanban.orchestrator.attachments import AttachmentStore
from auto_kanban.orchestrator.engine import ExecutionEngine
from auto_kanban.orchestrator.metering import UsageMeter
from auto_kanban.orchestrator.models import RuntimeEventView
from auto_kanban.orchestrator.prompts import DEFAULT_PREVIOUS_RESULT_MAX_CHARS
from auto_kanban.orchestrator.repository import OrchestratorRepository
from auto_kanban.orchestrator.runtime import StepRuntime

FunctionHandler = Callable[[RuntimeEventView, StepRuntime], Any]
FailureHook = Callable[[RuntimeEventView, Exception], None]


@dataclass(slots=True)
class OrchestrationDeps:
    """Collaborators the orchestration functions run against."""

    repository: OrchestratorRepository
    engine: ExecutionEngine
    meter: UsageMeter
    store: AttachmentStore
    previous_result_max_chars: int = DEFAULT_PREVIOUS_RESULT_MAX_CHARS


@dataclass(slots=True)
class FunctionDefinition:
    """One durable function bound to the event that triggers it.

    ``retries`` counts re-runs after the first attempt. Functions with
    ``creates_own_job`` write their job row inside a step, so the dispatcher
    skips the ``invoked`` lifecycle event for them.
    """

    function_id: str
    name: str
    event: str
    handler: FunctionHandler
    retries: int = 0
    concurrency: int | None = None
    on_failure: FailureHook | None = None
    creates_own_job: bool = False

    @property
    def max_attempts(self) -> int:
        return self.retries + 1
