"""Durable step runtime: memoized steps and an event outbox over SQLite.

A function run is identified by its run id. Every ``run(step_name, fn)`` call
stores the JSON result of ``fn()`` under (run id, step name); when the same run
is retried, completed steps return their stored value and ``fn`` is skipped.
Step results must therefore be JSON-serializable, and callers always receive
the decoded JSON form so first execution and replay look identical.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from typing import Any, Protocol, TypeVar

from auto_kanban.orchestrator.models import RuntimeEventView
from auto_kanban.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


class NonRetriableError(RuntimeError):
    """Failure that retrying the same run cannot fix."""


class StepReplayError(RuntimeError):
    """Step name reused within one run."""


class StepRuntime(Protocol):
    """Checkpointing contract used by orchestration functions."""

    run_id: str

    def run(self, step_name: str, fn: Callable[[], T]) -> Any: ...

    def send(self, event_name: str, payload: Mapping[str, Any]) -> RuntimeEventView: ...


class DurableStepRuntime:
    """StepRuntime backed by the ``function_steps`` and ``runtime_events`` tables."""

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        run_id: str,
        heartbeat: Callable[[], object] | None = None,
    ) -> None:
        self.repository = repository
        self.run_id = run_id
        self.heartbeat = heartbeat
        self._seen_steps: set[str] = set()
        self.replayed_steps: list[str] = []
        self.executed_steps: list[str] = []

    def run(self, step_name: str, fn: Callable[[], T]) -> Any:
        if step_name in self._seen_steps:
            raise StepReplayError(f"Step {step_name!r} already ran in run {self.run_id}.")
        self._seen_steps.add(step_name)

        stored = self.repository.get_step_output(run_id=self.run_id, step_name=step_name)
        if stored is not None:
            self.replayed_steps.append(step_name)
            logger.debug("Replaying step %s for run %s", step_name, self.run_id)
            return json.loads(stored)

        output_json = json.dumps(fn(), ensure_ascii=False, sort_keys=True)
        if not self.repository.save_step_output(
            run_id=self.run_id,
            step_name=step_name,
            output_json=output_json,
        ):
            # A concurrent attempt memoized first; its result is authoritative.
            winner = self.repository.get_step_output(run_id=self.run_id, step_name=step_name)
            if winner is not None:
                output_json = winner
        self.executed_steps.append(step_name)
        if self.heartbeat is not None:
            self.heartbeat()
        return json.loads(output_json)

    def send(self, event_name: str, payload: Mapping[str, Any]) -> RuntimeEventView:
        """Append an event to the outbox for asynchronous consumers."""

        event = self.repository.enqueue_event(name=event_name, payload=payload)
        logger.debug("Run %s sent %s (%s)", self.run_id, event_name, event.event_id)
        return event
