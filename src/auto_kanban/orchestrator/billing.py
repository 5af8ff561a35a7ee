"""Auto-reload consumer: charges for tokens when metering requests a reload."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Protocol

from auto_kanban.orchestrator.models import RuntimeEventView
from auto_kanban.orchestrator.repository import OrchestratorRepository
from auto_kanban.orchestrator.runtime import StepRuntime

logger = logging.getLogger(__name__)

AUTO_RELOAD_FUNCTION_ID = "auto-reload-tokens"
AUTO_RELOAD_FUNCTION_NAME = "Auto-Reload Tokens"


@dataclass(frozen=True, slots=True)
class PaymentResult:
    """Outcome reported by the payment provider."""

    status: str
    reference: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


class PaymentGateway(Protocol):
    """Off-session charge against the owner's default payment method."""

    def charge(self, *, owner_id: str, amount_cents: int, tokens: int) -> PaymentResult: ...


def cents_from_tokens(tokens: int, token_cents_per_1000: int) -> int:
    return math.ceil(tokens / 1000 * token_cents_per_1000)


class AutoReloadHandler:
    """Handles ``billing/auto-reload-tokens`` events.

    Configuration and the monthly cap are re-checked at charge time because the
    balance may have been reloaded or reconfigured since the request was sent.
    Payment errors end here as a skip result; they never reach metering.
    """

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        gateway: PaymentGateway,
        token_cents_per_1000: int = 1,
    ) -> None:
        self.repository = repository
        self.gateway = gateway
        self.token_cents_per_1000 = token_cents_per_1000

    def __call__(self, event: RuntimeEventView, runtime: StepRuntime) -> dict[str, Any]:
        owner_id = str(event.payload.get("ownerId", ""))

        subscription = runtime.run("get-subscription", lambda: self._load(owner_id))
        if subscription is None or not subscription["configured"]:
            return {"skipped": True, "reason": "Auto-reload not configured"}

        amount = int(subscription["amount"])
        cap = subscription["cap"]
        if cap is not None and subscription["reloadedSoFar"] + amount > cap:
            return {"skipped": True, "reason": "Monthly auto-reload cap reached"}
        if not subscription["hasPaymentMethod"]:
            return {"skipped": True, "reason": "No default payment method on file"}

        amount_cents = cents_from_tokens(amount, self.token_cents_per_1000)
        payment = runtime.run(
            "charge-card",
            lambda: self._charge(owner_id=owner_id, amount_cents=amount_cents, tokens=amount),
        )
        if payment["status"] != "succeeded":
            return {"skipped": True, "reason": f"Payment status: {payment['status']}"}

        balance = runtime.run(
            "update-balance",
            lambda: self._credit(owner_id=owner_id, tokens=amount, reference=payment["reference"]),
        )
        return {
            "success": True,
            "tokensAdded": amount,
            "amountCents": amount_cents,
            "tokensRemaining": balance,
        }

    def _load(self, owner_id: str) -> dict[str, Any] | None:
        subscription = self.repository.get_subscription(owner_id=owner_id)
        if subscription is None:
            return None
        return {
            "configured": bool(
                subscription.auto_reload_enabled and subscription.auto_reload_amount,
            ),
            "amount": subscription.auto_reload_amount or 0,
            "cap": subscription.max_monthly_auto_reload,
            "reloadedSoFar": subscription.monthly_auto_reloaded_so_far,
            "hasPaymentMethod": subscription.has_payment_method,
        }

    def _charge(self, *, owner_id: str, amount_cents: int, tokens: int) -> dict[str, Any]:
        try:
            result = self.gateway.charge(
                owner_id=owner_id,
                amount_cents=amount_cents,
                tokens=tokens,
            )
        except Exception as error:  # noqa: BLE001
            logger.warning("Auto-reload charge failed for owner %s: %s", owner_id, error)
            return {"status": "error", "reference": None, "error": str(error)}
        return {"status": result.status, "reference": result.reference}

    def _credit(self, *, owner_id: str, tokens: int, reference: str | None) -> int | None:
        subscription = self.repository.credit_auto_reload(
            owner_id=owner_id,
            tokens=tokens,
            payment_reference=reference,
        )
        if subscription is None:
            return None
        logger.info(
            "Auto-reloaded %d tokens for owner %s (balance %d)",
            tokens,
            owner_id,
            subscription.tokens_remaining,
        )
        return subscription.tokens_remaining
