from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

from ..schemas.subscriptions import (
    LIVE_STATUSES,
    CreateSubscriptionResponse,
    PaymentStatusResponse,
    SubscriptionStatus,
)
from .api import DashboardApiClient, DashboardApiError
from .cart import CartItem, CartStore
from .confirmation import (
    PaymentConfirmationError,
    PaymentConfirmationHandler,
    PendingConfirmation,
)

logger = logging.getLogger(__name__)


class BatchOutcome(str, Enum):
    active = "active"
    requires_action = "requires_action"
    incomplete = "incomplete"


class CheckoutError(RuntimeError):
    pass


class CheckoutInProgressError(CheckoutError):
    def __init__(self) -> None:
        super().__init__("A checkout is already in progress")


class CheckoutValidationError(CheckoutError):
    pass


@dataclass
class ItemResult:
    item: CartItem
    response: CreateSubscriptionResponse


class CheckoutItemError(CheckoutError):
    """One cart item failed; items before it keep their subscriptions, items after it were skipped."""

    def __init__(self, item: CartItem, error: DashboardApiError, completed: list[ItemResult]) -> None:
        super().__init__(f"{item.name}: {error.message}")
        self.item = item
        self.error = error
        self.completed = completed
        self.status_code = error.status_code
        self.code = error.code
        self.retryable = error.retryable

    @property
    def created_count(self) -> int:
        return len(self.completed)


@dataclass
class CheckoutResult:
    outcome: BatchOutcome
    results: list[ItemResult]
    verified: list[PaymentStatusResponse] = field(default_factory=list)
    statuses: dict[str, SubscriptionStatus] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return bool(self.statuses) and all(
            status in LIVE_STATUSES for status in self.statuses.values()
        )


def _is_live(response: CreateSubscriptionResponse) -> bool:
    return response.status in {"active", "trialing"} or response.payment_status == "succeeded"


def classify_batch(responses: Sequence[CreateSubscriptionResponse]) -> BatchOutcome:
    if responses and all(_is_live(r) for r in responses):
        return BatchOutcome.active
    if any(r.requires_action for r in responses):
        return BatchOutcome.requires_action
    return BatchOutcome.incomplete


def _provisional_status(response: CreateSubscriptionResponse) -> SubscriptionStatus:
    if response.status == "trialing":
        return SubscriptionStatus.trial
    if _is_live(response):
        return SubscriptionStatus.active
    return SubscriptionStatus.pending_payment


class CheckoutOrchestrator:
    """Turns a cart into subscriptions, one item at a time."""

    def __init__(
        self,
        api: DashboardApiClient,
        confirmation: PaymentConfirmationHandler,
        cart: Optional[CartStore] = None,
    ) -> None:
        self.api = api
        self.confirmation = confirmation
        self.cart = cart
        self.submitting = False

    async def submit(
        self,
        items: Sequence[CartItem],
        payment_method_id: Optional[str],
        coupon_code: Optional[str] = None,
        *,
        billing_complete: bool,
        promotion_code_id: Optional[str] = None,
    ) -> CheckoutResult:
        if self.submitting:
            raise CheckoutInProgressError()
        if not billing_complete:
            raise CheckoutValidationError("Please complete your billing details before checkout.")
        if not payment_method_id:
            raise CheckoutValidationError("Please select a payment method.")
        if not items:
            raise CheckoutValidationError("Your cart is empty.")
        for item in items:
            if item.is_pending_payment and not item.pending_subscription_id:
                raise CheckoutValidationError(
                    f"{item.name} has a pending payment that can no longer be found. "
                    "Remove it from your cart and add it again."
                )

        self.submitting = True
        try:
            return await self._run(items, payment_method_id, coupon_code, promotion_code_id)
        finally:
            self.submitting = False

    async def _run(
        self,
        items: Sequence[CartItem],
        payment_method_id: str,
        coupon_code: Optional[str],
        promotion_code_id: Optional[str],
    ) -> CheckoutResult:
        results: list[ItemResult] = []
        for item in items:
            try:
                if item.is_pending_payment and item.pending_subscription_id:
                    response = await self.api.retry_payment(
                        item.pending_subscription_id, payment_method_id
                    )
                else:
                    response = await self.api.create_subscription(
                        item.service_id,
                        payment_method_id,
                        coupon_code or None,
                        promotion_code_id,
                    )
            except DashboardApiError as exc:
                logger.info(
                    "Checkout stopped at %s after %d subscription(s): %s",
                    item.name,
                    len(results),
                    exc.message,
                )
                self._update_cart(results, {})
                raise CheckoutItemError(item, exc, list(results)) from exc
            results.append(ItemResult(item=item, response=response))

        outcome = classify_batch([r.response for r in results])
        result = CheckoutResult(
            outcome=outcome,
            results=results,
            statuses={r.response.subscription_id: _provisional_status(r.response) for r in results},
        )

        if outcome is BatchOutcome.requires_action:
            pending = [
                PendingConfirmation(
                    subscription_id=r.response.subscription_id,
                    client_secret=r.response.client_secret,
                    service_name=r.item.name,
                )
                for r in results
                if r.response.requires_action and r.response.client_secret
            ]
            try:
                result.verified = await self.confirmation.confirm_all(pending)
            except PaymentConfirmationError:
                self._update_cart(results, self.confirmation.statuses)
                raise
            result.statuses.update(
                {v.subscription_id: v.local_status for v in result.verified}
            )

        if result.success:
            if self.cart is not None:
                self.cart.clear_cart()
        else:
            self._update_cart(results, result.statuses)
        return result

    def _update_cart(
        self, results: list[ItemResult], statuses: dict[str, SubscriptionStatus]
    ) -> None:
        if self.cart is None:
            return
        done: set[int] = set()
        for r in results:
            status = statuses.get(r.response.subscription_id) or _provisional_status(r.response)
            if status in LIVE_STATUSES:
                done.add(r.item.service_id)
            else:
                self.cart.mark_pending(r.item.service_id, r.response.local_subscription_id)
        remaining = {item.service_id for item in self.cart.items} - done
        self.cart.keep_only(remaining)


__all__ = [
    "BatchOutcome",
    "CheckoutError",
    "CheckoutInProgressError",
    "CheckoutItemError",
    "CheckoutOrchestrator",
    "CheckoutResult",
    "CheckoutValidationError",
    "ItemResult",
    "classify_batch",
]
