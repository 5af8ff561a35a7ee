"""Dispatcher wiring and the Prefect flow that drains the runtime event queue.

``dispatch_flow`` lets a Prefect worker host the dispatcher loop on a schedule;
the CLI ``worker run`` command builds the same dispatcher without Prefect.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict

from prefect import flow

from auto_kanban.config import Settings
from auto_kanban.orchestrator.attachments import FilesystemAttachmentStore
from auto_kanban.orchestrator.backend import (
    AnthropicBackend,
    EchoBackend,
    LlmBackend,
    ToolBudget,
)
from auto_kanban.orchestrator.billing import AutoReloadHandler, PaymentGateway
from auto_kanban.orchestrator.dispatcher import EventDispatcher, build_default_functions
from auto_kanban.orchestrator.engine import ExecutionEngine
from auto_kanban.orchestrator.functions import OrchestrationDeps
from auto_kanban.orchestrator.job_tracker import JobTracker
from auto_kanban.orchestrator.metering import UsageMeter
from auto_kanban.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)


def build_backend(settings: Settings) -> LlmBackend:
    if settings.orchestrator.backend == "echo":
        return EchoBackend()
    anthropic = settings.anthropic
    if not anthropic.api_key:
        raise ValueError("ANTHROPIC_API_KEY is required for the anthropic backend.")
    return AnthropicBackend(
        api_key=anthropic.api_key,
        base_url=anthropic.base_url,
        api_version=anthropic.api_version,
        timeout_seconds=anthropic.request_timeout_seconds,
    )


def build_dispatcher(
    *,
    settings: Settings,
    repository: OrchestratorRepository,
    backend: LlmBackend | None = None,
    payment_gateway: PaymentGateway | None = None,
) -> EventDispatcher:
    """Assemble the dispatcher with every orchestration function registered.

    The auto-reload consumer is only registered when a payment gateway is
    given; without one, reload requests stay queued for a billing worker.
    """

    orchestrator = settings.orchestrator
    deps = OrchestrationDeps(
        repository=repository,
        engine=ExecutionEngine(
            backend=backend or build_backend(settings),
            model=orchestrator.execution_model,
            tool_budget=ToolBudget(
                web_search=orchestrator.max_tool_uses,
                web_fetch=orchestrator.max_tool_uses,
            ),
            max_tokens=orchestrator.max_output_tokens,
        ),
        meter=UsageMeter(
            repository=repository,
            auto_reload_event=settings.billing.auto_reload_event,
        ),
        store=FilesystemAttachmentStore(orchestrator.attachments_root),
        previous_result_max_chars=orchestrator.previous_result_max_chars,
    )
    auto_reload_handler = (
        AutoReloadHandler(
            repository=repository,
            gateway=payment_gateway,
            token_cents_per_1000=settings.billing.token_cents_per_1000,
        )
        if payment_gateway is not None
        else None
    )
    return EventDispatcher(
        repository=repository,
        functions=build_default_functions(
            deps,
            single_task_concurrency=orchestrator.single_task_concurrency,
            sequential_concurrency=orchestrator.sequential_concurrency,
            auto_reload_handler=auto_reload_handler,
        ),
        worker_id=orchestrator.worker_id,
        job_tracker=JobTracker(repository=repository),
        poll_interval_seconds=orchestrator.poll_interval_seconds,
        retry_delay_seconds=orchestrator.retry_delay_seconds,
        stale_event_seconds=orchestrator.stale_event_seconds,
    )


@flow(name="dispatch_flow")
def dispatch_flow(
    *,
    settings: Settings | None = None,
    max_events: int | None = None,
    max_idle_polls: int = 1,
) -> dict[str, int]:
    """Drain ready runtime events and report dispatcher counters."""

    resolved = settings or Settings.from_env()
    resolved.validate()
    with open_repository(resolved) as repository:
        dispatcher = build_dispatcher(settings=resolved, repository=repository)
        summary = dispatcher.run_loop(max_events=max_events, max_idle_polls=max_idle_polls)
    logger.info(
        "Dispatch flow finished: processed=%d succeeded=%d failed=%d retried=%d",
        summary.processed,
        summary.succeeded,
        summary.failed,
        summary.retried,
    )
    return asdict(summary)


@contextmanager
def open_repository(settings: Settings) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
