"""Polling dispatcher that runs durable functions for queued runtime events."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from functools import partial
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from auto_kanban.orchestrator.billing import (
    AUTO_RELOAD_FUNCTION_ID,
    AUTO_RELOAD_FUNCTION_NAME,
    AutoReloadHandler,
)
from auto_kanban.orchestrator.functions import FunctionDefinition, OrchestrationDeps
from auto_kanban.orchestrator.job_tracker import (
    FUNCTION_FAILED_EVENT,
    FUNCTION_FINISHED_EVENT,
    FUNCTION_INVOKED_EVENT,
    JobTracker,
    is_tracked_function,
)
from auto_kanban.orchestrator.metering import AUTO_RELOAD_EVENT
from auto_kanban.orchestrator.models import RuntimeEventView
from auto_kanban.orchestrator.repository import OrchestratorRepository
from auto_kanban.orchestrator.runtime import DurableStepRuntime, NonRetriableError
from auto_kanban.orchestrator.sequential import (
    SEQUENTIAL_CONCURRENCY,
    SEQUENTIAL_EVENT,
    SEQUENTIAL_FUNCTION_ID,
    SEQUENTIAL_FUNCTION_NAME,
    SEQUENTIAL_RETRIES,
    execute_sequential_ai_tasks,
    on_sequential_failure,
)
from auto_kanban.orchestrator.single_task import (
    AI_TASK_CONCURRENCY,
    AI_TASK_EVENT,
    AI_TASK_FUNCTION_ID,
    AI_TASK_FUNCTION_NAME,
    AI_TASK_RETRIES,
    execute_ai_task,
    on_ai_task_failure,
)
from auto_kanban.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatcherRunSummary:
    """Aggregate dispatcher counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    idle_polls: int = 0

    def add(self, other: DispatcherRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.idle_polls += other.idle_polls


def build_default_functions(
    deps: OrchestrationDeps,
    *,
    single_task_concurrency: int = AI_TASK_CONCURRENCY,
    sequential_concurrency: int = SEQUENTIAL_CONCURRENCY,
    auto_reload_handler: AutoReloadHandler | None = None,
) -> list[FunctionDefinition]:
    """Bind the orchestration functions to their trigger events."""

    functions = [
        FunctionDefinition(
            function_id=AI_TASK_FUNCTION_ID,
            name=AI_TASK_FUNCTION_NAME,
            event=AI_TASK_EVENT,
            handler=partial(execute_ai_task, deps=deps),
            retries=AI_TASK_RETRIES,
            concurrency=single_task_concurrency,
            on_failure=partial(on_ai_task_failure, deps=deps),
            creates_own_job=True,
        ),
        FunctionDefinition(
            function_id=SEQUENTIAL_FUNCTION_ID,
            name=SEQUENTIAL_FUNCTION_NAME,
            event=SEQUENTIAL_EVENT,
            handler=partial(execute_sequential_ai_tasks, deps=deps),
            retries=SEQUENTIAL_RETRIES,
            concurrency=sequential_concurrency,
            on_failure=partial(on_sequential_failure, deps=deps),
            creates_own_job=True,
        ),
    ]
    if auto_reload_handler is not None:
        functions.append(
            FunctionDefinition(
                function_id=AUTO_RELOAD_FUNCTION_ID,
                name=AUTO_RELOAD_FUNCTION_NAME,
                event=AUTO_RELOAD_EVENT,
                handler=auto_reload_handler,
            ),
        )
    return functions


class EventDispatcher:
    """Claims queued events and executes the function registered for each.

    A failed attempt is requeued under the same run id so memoized steps
    replay; once attempts run out (or the error is non-retriable) the
    function's failure hook runs and the event is marked failed. Events with
    no registered function are never claimed.

    A running event's heartbeat is refreshed after every executed step and on
    a timer while the handler runs. Events whose heartbeat is older than
    ``stale_event_seconds`` belong to a dead worker and are requeued.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        functions: Sequence[FunctionDefinition],
        worker_id: str,
        job_tracker: JobTracker | None = None,
        poll_interval_seconds: float = 2.0,
        retry_delay_seconds: int = 30,
        stale_event_seconds: int = 1800,
        heartbeat_interval_seconds: float | None = None,
    ) -> None:
        self.repository = repository
        self.worker_id = worker_id
        self.job_tracker = job_tracker
        self.poll_interval_seconds = poll_interval_seconds
        self.retry_delay_seconds = retry_delay_seconds
        self.stale_event_seconds = stale_event_seconds
        if heartbeat_interval_seconds is None:
            heartbeat_interval_seconds = stale_event_seconds / 3 if stale_event_seconds > 0 else 0
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self._functions: dict[str, FunctionDefinition] = {}
        for definition in functions:
            if definition.event in self._functions:
                raise ValueError(f"Duplicate function registration for event {definition.event}")
            self._functions[definition.event] = definition
        self._stop_requested = False

    @property
    def concurrency_limits(self) -> dict[str, int | None]:
        return {event: definition.concurrency for event, definition in self._functions.items()}

    def stop(self) -> None:
        """Stop claiming new events; the in-flight event runs to completion."""

        self._stop_requested = True

    def run_once(self) -> DispatcherRunSummary:
        """Process at most one event from the queue."""

        summary = DispatcherRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        event = self._claim_event()
        if event is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        definition = self._functions[event.name]
        runtime = DurableStepRuntime(
            repository=self.repository,
            run_id=event.run_id,
            heartbeat=partial(self._touch, event),
        )
        if not definition.creates_own_job:
            self._emit_lifecycle(FUNCTION_INVOKED_EVENT, definition=definition, event=event)

        try:
            with self._heartbeat(event):
                result = definition.handler(event, runtime)
        except Exception as error:  # noqa: BLE001
            self._handle_failure(definition=definition, event=event, error=error, summary=summary)
            return summary

        self.repository.complete_event(event_id=event.event_id)
        self._emit_lifecycle(
            FUNCTION_FINISHED_EVENT,
            definition=definition,
            event=event,
            extra={"result": result},
        )
        summary.succeeded = 1
        logger.info(
            "Run %s (%s) completed on attempt %d",
            event.run_id,
            definition.function_id,
            event.attempt,
        )
        return summary

    def run_loop(
        self,
        *,
        max_events: int | None = None,
        max_idle_polls: int = 1,
    ) -> DispatcherRunSummary:
        """Run until the queue is idle or max_events were processed.

        Args:
            max_events: Stop after processing this many events (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = DispatcherRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_events is not None and aggregate.processed >= max_events:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def _claim_event(self) -> RuntimeEventView | None:
        if self.stale_event_seconds > 0:
            recovered = self.repository.recover_stale_events(
                stale_before=utc_now() - timedelta(seconds=self.stale_event_seconds),
            )
            if recovered:
                logger.warning("Requeued %d stale running events", recovered)
        return self.repository.claim_next_event(
            worker_id=self.worker_id,
            concurrency_limits=self.concurrency_limits,
        )

    def _handle_failure(
        self,
        *,
        definition: FunctionDefinition,
        event: RuntimeEventView,
        error: Exception,
        summary: DispatcherRunSummary,
    ) -> None:
        message = str(error) or type(error).__name__
        retriable = not isinstance(error, NonRetriableError)
        if retriable and event.attempt < definition.max_attempts:
            self.repository.requeue_event(
                event_id=event.event_id,
                run_after=utc_now() + timedelta(seconds=self.retry_delay_seconds),
                error=message,
            )
            summary.retried = 1
            logger.warning(
                "Run %s (%s) attempt %d/%d failed, retrying: %s",
                event.run_id,
                definition.function_id,
                event.attempt,
                definition.max_attempts,
                message,
            )
            return

        if retriable:
            logger.error(
                "Run %s (%s) failed after %d attempts",
                event.run_id,
                definition.function_id,
                event.attempt,
                exc_info=error,
            )
        else:
            logger.error("Run %s (%s) failed: %s", event.run_id, definition.function_id, message)
        if definition.on_failure is not None:
            try:
                definition.on_failure(event, error)
            except Exception:
                logger.exception("Failure hook for run %s raised", event.run_id)
        self.repository.fail_event(event_id=event.event_id, error=message)
        self._emit_lifecycle(
            FUNCTION_FAILED_EVENT,
            definition=definition,
            event=event,
            extra={"error": message},
        )
        summary.failed = 1

    def _emit_lifecycle(
        self,
        name: str,
        *,
        definition: FunctionDefinition,
        event: RuntimeEventView,
        extra: dict[str, Any] | None = None,
    ) -> None:
        if self.job_tracker is None or not is_tracked_function(definition.function_id):
            return
        payload: dict[str, Any] = {
            "functionId": definition.function_id,
            "functionName": definition.name,
            "runId": event.run_id,
            "workspaceId": event.payload.get("workspaceId"),
            "correlationId": event.event_id,
            "metadata": event.payload,
            "attempt": event.attempt,
            "maxAttempts": definition.max_attempts,
            **(extra or {}),
        }
        self.job_tracker.handle_event(name, payload)

    def _touch(self, event: RuntimeEventView) -> None:
        try:
            held = self.repository.touch_event(event_id=event.event_id, worker_id=self.worker_id)
        except SQLAlchemyError:
            logger.warning("Heartbeat for run %s failed", event.run_id, exc_info=True)
            return
        if not held:
            logger.warning("Run %s is no longer held by %s", event.run_id, self.worker_id)

    @contextmanager
    def _heartbeat(self, event: RuntimeEventView) -> Iterator[None]:
        """Keep the claimed event fresh while its handler runs."""

        if self.heartbeat_interval_seconds <= 0:
            yield
            return
        stopped = threading.Event()

        def _beat() -> None:
            while not stopped.wait(self.heartbeat_interval_seconds):
                self._touch(event)

        thread = threading.Thread(target=_beat, name=f"heartbeat-{event.run_id}", daemon=True)
        thread.start()
        try:
            yield
        finally:
            stopped.set()
            thread.join()

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        def _handler(signum: int, _: object | None) -> None:
            logger.info("Received %s, finishing current event", signal.Signals(signum).name)
            self.stop()

        try:
            original_sigint = signal.signal(signal.SIGINT, _handler)
            original_sigterm = signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
