from __future__ import annotations

import allure
import pytest

from auto_kanban.orchestrator.billing import (
    AutoReloadHandler,
    PaymentResult,
    cents_from_tokens,
)
from auto_kanban.orchestrator.metering import AUTO_RELOAD_EVENT
from auto_kanban.orchestrator.models import AutoReloadSettingsWrite
from auto_kanban.orchestrator.repository import OrchestratorRepository
from auto_kanban.orchestrator.runtime import DurableStepRuntime

pytestmark = [
    allure.epic("Token Metering"),
    allure.feature("Auto-Reload"),
]


class FakeGateway:
    def __init__(self, *, status: str = "succeeded", error: Exception | None = None) -> None:
        self.status = status
        self.error = error
        self.charges: list[tuple[str, int, int]] = []

    def charge(self, *, owner_id: str, amount_cents: int, tokens: int) -> PaymentResult:
        self.charges.append((owner_id, amount_cents, tokens))
        if self.error is not None:
            raise self.error
        return PaymentResult(status=self.status, reference=f"pi_{len(self.charges)}")


def _configure(repository: OrchestratorRepository, **overrides) -> None:
    repository.ensure_subscription(owner_id="owner-1", initial_tokens=100)
    settings = {
        "auto_reload_enabled": True,
        "auto_reload_threshold": 1_000,
        "auto_reload_amount": 50_000,
        "max_monthly_auto_reload": 200_000,
        "has_payment_method": True,
    }
    settings.update(overrides)
    repository.configure_auto_reload(
        owner_id="owner-1",
        settings=AutoReloadSettingsWrite(**settings),
    )


def _event(repository: OrchestratorRepository):
    return repository.enqueue_event(name=AUTO_RELOAD_EVENT, payload={"ownerId": "owner-1"})


def test_cents_from_tokens_rounds_up() -> None:
    assert cents_from_tokens(50_000, 1) == 50
    assert cents_from_tokens(1_500, 1) == 2
    assert cents_from_tokens(1_000, 3) == 3


def test_successful_reload_credits_balance(repository: OrchestratorRepository) -> None:
    _configure(repository)
    gateway = FakeGateway()
    handler = AutoReloadHandler(repository=repository, gateway=gateway)
    event = _event(repository)

    result = handler(event, DurableStepRuntime(repository=repository, run_id=event.run_id))

    assert result == {
        "success": True,
        "tokensAdded": 50_000,
        "amountCents": 50,
        "tokensRemaining": 50_100,
    }
    assert gateway.charges == [("owner-1", 50, 50_000)]
    subscription = repository.get_subscription(owner_id="owner-1")
    assert subscription is not None
    assert subscription.monthly_auto_reloaded_so_far == 50_000
    events = repository.list_subscription_events(owner_id="owner-1")
    assert [(row.event_type, row.tokens_added, row.payment_reference) for row in events] == [
        ("tokens_auto_reloaded", 50_000, "pi_1"),
    ]


def test_replayed_reload_does_not_charge_twice(repository: OrchestratorRepository) -> None:
    _configure(repository)
    gateway = FakeGateway()
    handler = AutoReloadHandler(repository=repository, gateway=gateway)
    event = _event(repository)

    handler(event, DurableStepRuntime(repository=repository, run_id=event.run_id))
    handler(event, DurableStepRuntime(repository=repository, run_id=event.run_id))

    assert len(gateway.charges) == 1
    subscription = repository.get_subscription(owner_id="owner-1")
    assert subscription is not None
    assert subscription.tokens_remaining == 50_100


@pytest.mark.parametrize(
    ("overrides", "reason"),
    [
        ({"auto_reload_enabled": False}, "Auto-reload not configured"),
        ({"max_monthly_auto_reload": 40_000}, "Monthly auto-reload cap reached"),
        ({"has_payment_method": False}, "No default payment method on file"),
    ],
)
def test_reload_is_skipped_when_not_allowed(
    repository: OrchestratorRepository,
    overrides: dict,
    reason: str,
) -> None:
    _configure(repository, **overrides)
    gateway = FakeGateway()
    handler = AutoReloadHandler(repository=repository, gateway=gateway)
    event = _event(repository)

    result = handler(event, DurableStepRuntime(repository=repository, run_id=event.run_id))

    assert result == {"skipped": True, "reason": reason}
    assert gateway.charges == []


def test_reload_for_unknown_owner_is_skipped(repository: OrchestratorRepository) -> None:
    handler = AutoReloadHandler(repository=repository, gateway=FakeGateway())
    event = _event(repository)

    result = handler(event, DurableStepRuntime(repository=repository, run_id=event.run_id))

    assert result == {"skipped": True, "reason": "Auto-reload not configured"}


def test_declined_or_failing_payment_leaves_balance(repository: OrchestratorRepository) -> None:
    _configure(repository)
    declined = AutoReloadHandler(
        repository=repository,
        gateway=FakeGateway(status="requires_action"),
    )
    first = _event(repository)
    assert declined(first, DurableStepRuntime(repository=repository, run_id=first.run_id)) == {
        "skipped": True,
        "reason": "Payment status: requires_action",
    }

    failing = AutoReloadHandler(
        repository=repository,
        gateway=FakeGateway(error=RuntimeError("card network down")),
    )
    second = _event(repository)
    assert failing(second, DurableStepRuntime(repository=repository, run_id=second.run_id)) == {
        "skipped": True,
        "reason": "Payment status: error",
    }

    subscription = repository.get_subscription(owner_id="owner-1")
    assert subscription is not None
    assert subscription.tokens_remaining == 100
    assert repository.list_subscription_events(owner_id="owner-1") == []
