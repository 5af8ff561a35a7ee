from __future__ import annotations

import time
from datetime import timedelta

import allure
import pytest

from auto_kanban.orchestrator.dispatcher import EventDispatcher
from auto_kanban.orchestrator.functions import FunctionDefinition
from auto_kanban.orchestrator.job_tracker import JobTracker
from auto_kanban.orchestrator.models import JobStatus, RuntimeEventStatus
from auto_kanban.orchestrator.repository import OrchestratorRepository
from auto_kanban.orchestrator.runtime import NonRetriableError
from auto_kanban.storage.common import utc_now

pytestmark = [
    allure.epic("Durable Runtime"),
    allure.feature("Event Dispatcher"),
]

TEST_EVENT = "test/echo"


def _dispatcher(
    repository: OrchestratorRepository,
    *definitions: FunctionDefinition,
) -> EventDispatcher:
    return EventDispatcher(
        repository=repository,
        functions=definitions,
        worker_id="test-worker",
        job_tracker=JobTracker(repository=repository),
        poll_interval_seconds=0,
        retry_delay_seconds=0,
    )


def test_handler_result_completes_event_and_tracked_job(
    repository: OrchestratorRepository,
) -> None:
    calls: list[str] = []

    def handler(event, runtime):
        calls.append(runtime.run_id)
        return runtime.run("echo", lambda: {"echo": event.payload["value"]})

    definition = FunctionDefinition(
        function_id="echo",
        name="Echo",
        event=TEST_EVENT,
        handler=handler,
    )
    event = repository.enqueue_event(
        name=TEST_EVENT,
        payload={"value": 7, "workspaceId": "ws-1"},
    )

    summary = _dispatcher(repository, definition).run_once()

    assert (summary.processed, summary.succeeded) == (1, 1)
    assert calls == [event.run_id]
    stored = repository.get_event(event_id=event.event_id)
    assert stored is not None
    assert stored.status == RuntimeEventStatus.COMPLETED
    job = repository.get_job(run_id=event.run_id)
    assert job is not None
    assert job.status == JobStatus.COMPLETED
    assert job.function_name == "Echo"
    assert job.result == {"echo": 7}


def test_failed_attempts_retry_under_same_run_id(repository: OrchestratorRepository) -> None:
    run_ids: list[str] = []
    hook_calls: list[str] = []

    def handler(event, runtime):
        run_ids.append(runtime.run_id)
        raise RuntimeError("flaky dependency")

    definition = FunctionDefinition(
        function_id="flaky",
        name="Flaky",
        event=TEST_EVENT,
        handler=handler,
        retries=2,
        on_failure=lambda event, error: hook_calls.append(str(error)),
    )
    event = repository.enqueue_event(name=TEST_EVENT, payload={"workspaceId": "ws-1"})

    summary = _dispatcher(repository, definition).run_loop(max_idle_polls=1)

    assert (summary.processed, summary.retried, summary.failed) == (3, 2, 1)
    assert run_ids == [event.run_id] * 3
    assert hook_calls == ["flaky dependency"]
    stored = repository.get_event(event_id=event.event_id)
    assert stored is not None
    assert stored.status == RuntimeEventStatus.FAILED
    assert stored.attempt == 3
    assert stored.error == "flaky dependency"
    job = repository.get_job(run_id=event.run_id)
    assert job is not None
    assert job.status == JobStatus.FAILED
    assert job.error == "flaky dependency"


def test_non_retriable_error_skips_remaining_attempts(
    repository: OrchestratorRepository,
) -> None:
    attempts: list[int] = []

    def handler(event, runtime):
        attempts.append(event.attempt)
        raise NonRetriableError("bad input")

    definition = FunctionDefinition(
        function_id="strict",
        name="Strict",
        event=TEST_EVENT,
        handler=handler,
        retries=3,
    )
    repository.enqueue_event(name=TEST_EVENT, payload={})

    summary = _dispatcher(repository, definition).run_loop(max_idle_polls=1)

    assert attempts == [1]
    assert (summary.failed, summary.retried) == (1, 0)


def test_failure_hook_errors_do_not_block_event_failure(
    repository: OrchestratorRepository,
) -> None:
    def handler(event, runtime):
        raise NonRetriableError("boom")

    def hook(event, error):
        raise RuntimeError("hook broke")

    definition = FunctionDefinition(
        function_id="boom",
        name="Boom",
        event=TEST_EVENT,
        handler=handler,
        on_failure=hook,
    )
    event = repository.enqueue_event(name=TEST_EVENT, payload={})

    _dispatcher(repository, definition).run_once()

    stored = repository.get_event(event_id=event.event_id)
    assert stored is not None
    assert stored.status == RuntimeEventStatus.FAILED


def test_unregistered_events_stay_queued(repository: OrchestratorRepository) -> None:
    definition = FunctionDefinition(
        function_id="echo",
        name="Echo",
        event=TEST_EVENT,
        handler=lambda event, runtime: None,
    )
    event = repository.enqueue_event(name="billing/auto-reload-tokens", payload={"ownerId": "o"})

    summary = _dispatcher(repository, definition).run_once()

    assert (summary.processed, summary.idle_polls) == (0, 1)
    stored = repository.get_event(event_id=event.event_id)
    assert stored is not None
    assert stored.status == RuntimeEventStatus.QUEUED


def test_claim_respects_per_function_concurrency(repository: OrchestratorRepository) -> None:
    first = repository.enqueue_event(name=TEST_EVENT, payload={"n": 1})
    second = repository.enqueue_event(name=TEST_EVENT, payload={"n": 2})
    limits = {TEST_EVENT: 1}

    claimed = repository.claim_next_event(worker_id="w1", concurrency_limits=limits)
    assert claimed is not None
    assert claimed.event_id == first.event_id
    assert claimed.attempt == 1
    assert repository.claim_next_event(worker_id="w2", concurrency_limits=limits) is None

    repository.complete_event(event_id=first.event_id)
    next_claim = repository.claim_next_event(worker_id="w2", concurrency_limits=limits)
    assert next_claim is not None
    assert next_claim.event_id == second.event_id
    assert next_claim.worker_id == "w2"


def test_unbounded_function_claims_without_limit(repository: OrchestratorRepository) -> None:
    for index in range(3):
        repository.enqueue_event(name=TEST_EVENT, payload={"n": index})

    claimed = [
        repository.claim_next_event(worker_id="w", concurrency_limits={TEST_EVENT: None})
        for _ in range(3)
    ]

    assert all(event is not None for event in claimed)


def test_stale_running_events_are_requeued(repository: OrchestratorRepository) -> None:
    event = repository.enqueue_event(name=TEST_EVENT, payload={})
    repository.claim_next_event(worker_id="dead-worker", concurrency_limits={TEST_EVENT: 1})

    recovered = repository.recover_stale_events(stale_before=utc_now() + timedelta(seconds=1))

    assert recovered == 1
    stored = repository.get_event(event_id=event.event_id)
    assert stored is not None
    assert stored.status == RuntimeEventStatus.QUEUED
    assert stored.worker_id is None
    assert stored.run_id == event.run_id


def test_recovery_uses_heartbeat_not_claim_time(repository: OrchestratorRepository) -> None:
    event = repository.enqueue_event(name=TEST_EVENT, payload={})
    repository.claim_next_event(worker_id="worker-a", concurrency_limits={TEST_EVENT: 1})
    cutoff = utc_now()
    time.sleep(0.01)

    assert repository.touch_event(event_id=event.event_id, worker_id="worker-a") is True
    assert repository.touch_event(event_id=event.event_id, worker_id="worker-b") is False
    assert repository.recover_stale_events(stale_before=cutoff) == 0
    stored = repository.get_event(event_id=event.event_id)
    assert stored is not None
    assert stored.status == RuntimeEventStatus.RUNNING
    assert stored.heartbeat_at is not None
    assert stored.heartbeat_at > cutoff


def test_long_running_step_is_not_taken_over_by_another_worker(
    repository: OrchestratorRepository,
) -> None:
    calls: list[str] = []
    definition = FunctionDefinition(
        function_id="slow",
        name="Slow",
        event=TEST_EVENT,
        handler=lambda event, runtime: runtime.run("execute", run_slow_step),
        concurrency=5,
    )
    other = EventDispatcher(
        repository=repository,
        functions=[definition],
        worker_id="worker-b",
        poll_interval_seconds=0,
        retry_delay_seconds=0,
        stale_event_seconds=1,
    )

    def run_slow_step() -> int:
        calls.append("worker-a")
        time.sleep(1.2)
        return other.run_once().processed

    repository.enqueue_event(name=TEST_EVENT, payload={})
    first = EventDispatcher(
        repository=repository,
        functions=[definition],
        worker_id="worker-a",
        poll_interval_seconds=0,
        retry_delay_seconds=0,
        stale_event_seconds=1,
        heartbeat_interval_seconds=0.2,
    )

    summary = first.run_once()

    assert summary.succeeded == 1
    assert calls == ["worker-a"]
    events = repository.list_events(name=TEST_EVENT)
    assert [event.status for event in events] == [RuntimeEventStatus.COMPLETED]
    assert repository.get_step_output(run_id=events[0].run_id, step_name="execute") == "0"


def test_run_loop_stops_at_max_events(repository: OrchestratorRepository) -> None:
    definition = FunctionDefinition(
        function_id="echo",
        name="Echo",
        event=TEST_EVENT,
        handler=lambda event, runtime: None,
    )
    for index in range(3):
        repository.enqueue_event(name=TEST_EVENT, payload={"n": index})

    summary = _dispatcher(repository, definition).run_loop(max_events=2)

    assert summary.processed == 2
    assert len(repository.list_events(status=RuntimeEventStatus.QUEUED)) == 1


def test_stopped_dispatcher_claims_nothing(repository: OrchestratorRepository) -> None:
    definition = FunctionDefinition(
        function_id="echo",
        name="Echo",
        event=TEST_EVENT,
        handler=lambda event, runtime: None,
    )
    repository.enqueue_event(name=TEST_EVENT, payload={})
    dispatcher = _dispatcher(repository, definition)

    dispatcher.stop()

    assert dispatcher.run_once().processed == 0


def test_duplicate_event_registration_is_rejected(repository: OrchestratorRepository) -> None:
    definition = FunctionDefinition(
        function_id="echo",
        name="Echo",
        event=TEST_EVENT,
        handler=lambda event, runtime: None,
    )

    with pytest.raises(ValueError, match="Duplicate function registration"):
        _dispatcher(repository, definition, definition)
