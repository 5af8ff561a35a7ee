"""Usage metering: ledger append, balance decrement and auto-reload trigger."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from auto_kanban.orchestrator.models import SubscriptionView, TokenUsageView, TokenUsageWrite
from auto_kanban.orchestrator.pricing import calculate_cost_cents
from auto_kanban.orchestrator.repository import OrchestratorRepository
from auto_kanban.orchestrator.runtime import StepRuntime

logger = logging.getLogger(__name__)

AUTO_RELOAD_EVENT = "billing/auto-reload-tokens"


@dataclass(slots=True)
class UsageRecord:
    """What one metered execution produced."""

    usage: TokenUsageView
    subscription: SubscriptionView | None
    auto_reload_requested: bool


def should_auto_reload(subscription: SubscriptionView, new_balance: int) -> bool:
    """Whether the post-decrement balance qualifies for an auto-reload request."""

    if not subscription.auto_reload_enabled:
        return False
    threshold = subscription.auto_reload_threshold
    amount = subscription.auto_reload_amount
    if threshold is None or amount is None:
        return False
    if new_balance >= threshold:
        return False
    if not subscription.has_payment_method:
        return False
    cap = subscription.max_monthly_auto_reload
    if cap is not None and subscription.monthly_auto_reloaded_so_far + amount > cap:
        return False
    return True


class UsageMeter:
    """Records token usage and cascades it into the owner's balance."""

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        auto_reload_event: str = AUTO_RELOAD_EVENT,
    ) -> None:
        self.repository = repository
        self.auto_reload_event = auto_reload_event

    def record(
        self,
        payload: TokenUsageWrite,
        *,
        owner_id: str | None,
        runtime: StepRuntime,
    ) -> UsageRecord:
        """Append the ledger row, deduct the balance, request a reload if due.

        The reload is only requested through ``runtime.send``; charging happens
        asynchronously in the billing consumer.
        """

        cost_cents = calculate_cost_cents(
            payload.model,
            payload.input_tokens,
            payload.output_tokens,
            payload.cache_creation_input_tokens,
            payload.cache_read_input_tokens,
        )
        usage = self.repository.append_token_usage(payload, cost_cents=cost_cents)

        if not owner_id:
            return UsageRecord(usage=usage, subscription=None, auto_reload_requested=False)
        subscription = self.repository.deduct_tokens(
            owner_id=owner_id,
            tokens=usage.total_tokens,
        )
        if subscription is None:
            logger.debug("No subscription for owner %s; balance not deducted", owner_id)
            return UsageRecord(usage=usage, subscription=None, auto_reload_requested=False)

        requested = should_auto_reload(subscription, subscription.tokens_remaining)
        if requested:
            runtime.send(self.auto_reload_event, {"ownerId": owner_id})
            logger.info(
                "Auto-reload requested for owner %s at balance %d",
                owner_id,
                subscription.tokens_remaining,
            )
        return UsageRecord(
            usage=usage,
            subscription=subscription,
            auto_reload_requested=requested,
        )
