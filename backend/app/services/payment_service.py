from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Mapping

import stripe
from psycopg import errors as pg_errors

from .. import metrics
from ..config import settings
from ..repositories import stripe_customers as stripe_customers_repo
from ..repositories import subscriptions as subscriptions_repo
from ..repositories import users as users_repo
from ..schemas.subscriptions import (
    CreateSubscriptionResponse,
    IncompletePayment,
    IncompletePaymentSource,
    IncompletePaymentsResponse,
    PaymentStatusResponse,
    RetryPaymentRequest,
    SubscriptionStatus,
)
from . import billing_sync, stripe_gateway
from .billing_errors import (
    DuplicateSubscriptionError,
    SubscriptionNotFoundError,
    SubscriptionValidationError,
    classify_stripe_error,
)
from .payment_outcome import (
    REPAYABLE_INTENT_STATUSES,
    PaymentOutcome,
    attach_default_payment_method,
    load_intent,
    pay_open_invoice,
    to_datetime,
)

logger = logging.getLogger(__name__)

ACTIONABLE_INTENT_STATUSES = frozenset({"requires_action", "requires_payment_method"})
_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def _return_url() -> str:
    base = (settings.frontend_base_url or "http://localhost:3000").rstrip("/")
    return f"{base}/dashboard/checkout?success=true"


async def _activate(
    record: Mapping[str, Any],
    *,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> None:
    try:
        await subscriptions_repo.update_status(
            record["id"],
            SubscriptionStatus.active.value,
            start_date=start_date,
            end_date=end_date,
            renewal_date=end_date,
        )
    except pg_errors.UniqueViolation as exc:
        raise DuplicateSubscriptionError(
            "You already have an active subscription for this service."
        ) from exc


async def retry_payment(
    user: Mapping[str, Any], payload: RetryPaymentRequest
) -> CreateSubscriptionResponse:
    """Charge a pending subscription again with a (possibly new) card."""
    user_id = str(user["id"])
    record = await subscriptions_repo.get_for_user(payload.subscription_id, user_id)
    if not record:
        raise SubscriptionNotFoundError("Subscription not found")
    if record["status"] != SubscriptionStatus.pending_payment.value:
        raise SubscriptionValidationError(
            "This action is only allowed for pending payment subscriptions",
            code="not_pending_payment",
        )
    stripe_id = record.get("stripe_subscription_id")
    if not stripe_id:
        raise SubscriptionValidationError(
            "No Stripe subscription ID found", code="missing_processor_reference"
        )

    customer_id = await stripe_customers_repo.get_customer_id_for_user(user_id)
    if not customer_id:
        raise SubscriptionValidationError(
            "No payment method found. Please add a payment method first.",
            code="payment_method_missing",
        )

    stripe_gateway.ensure_configured()
    profile = await users_repo.get_billing_profile(user_id)
    if profile:
        await billing_sync.sync_customer_billing(customer_id, profile, user_id=user_id)

    await attach_default_payment_method(customer_id, payload.payment_method_id, user_id=user_id)

    outcome = PaymentOutcome()
    try:
        subscription = await stripe_gateway.retrieve_subscription(stripe_id)
        invoice = subscription.invoice
        if subscription.status == "active":
            outcome.payment_status = "succeeded"
        elif subscription.status == "incomplete" and invoice is not None:
            if invoice.payment_intent:
                intent = await load_intent(invoice.payment_intent)
                if intent.status in REPAYABLE_INTENT_STATUSES:
                    intent = await stripe_gateway.confirm_payment_intent(
                        intent.id, payload.payment_method_id, _return_url()
                    )
                outcome.apply_intent(intent)
            else:
                await pay_open_invoice(
                    invoice,
                    subscription_id=subscription.id,
                    payment_method_id=payload.payment_method_id,
                    customer_id=customer_id,
                    outcome=outcome,
                )
    except stripe.StripeError as exc:
        metrics.payment_retries_total.labels(outcome="error").inc()
        raise classify_stripe_error(exc, action="retry payment") from exc

    if outcome.payment_status == "succeeded":
        await _activate(record)

    metrics.payment_retries_total.labels(outcome=outcome.payment_status).inc()
    logger.info(
        "Payment retry finished",
        extra={
            "user": user_id,
            "local_subscription_id": record["id"],
            "subscription_id": subscription.id,
            "payment_status": outcome.payment_status,
            "requires_action": outcome.requires_action,
        },
    )
    return CreateSubscriptionResponse(
        subscription_id=subscription.id,
        status=subscription.status,
        local_subscription_id=record["id"],
        requires_action=outcome.requires_action,
        client_secret=outcome.client_secret,
        payment_status=outcome.payment_status,
    )


async def check_payment_status(
    user: Mapping[str, Any], stripe_subscription_id: str
) -> PaymentStatusResponse:
    """Reconcile the local mirror with what Stripe reports for the subscription.

    Used after the browser finished a 3-D Secure challenge: an active
    subscription, or an incomplete one whose intent already succeeded, moves
    the local record to active and refreshes its period bounds.
    """
    user_id = str(user["id"])
    record = await subscriptions_repo.get_by_stripe_id(stripe_subscription_id)
    if not record or str(record.get("user_id")) != user_id:
        raise SubscriptionNotFoundError("Subscription not found")

    stripe_gateway.ensure_configured()
    try:
        subscription = await stripe_gateway.retrieve_subscription(stripe_subscription_id)
        invoice = subscription.invoice
        intent = None
        if invoice is not None and invoice.payment_intent:
            intent = await load_intent(invoice.payment_intent)
    except stripe.StripeError as exc:
        raise classify_stripe_error(exc, action="check payment status") from exc

    payment_status = intent.status if intent is not None else "unknown"
    intent_status = intent.status if intent is not None else None

    local_status = SubscriptionStatus(record["status"])
    updated = False
    paid = (
        subscription.status == "active" and local_status is not SubscriptionStatus.active
    ) or (subscription.status == "incomplete" and intent_status == "succeeded")
    # A locally cancelled record is final; Stripe catching up must not revive it.
    if paid and local_status is not SubscriptionStatus.cancelled:
        await _activate(
            record,
            start_date=to_datetime(subscription.period_start),
            end_date=to_datetime(subscription.period_end),
        )
        logger.info(
            "Local subscription reconciled with Stripe",
            extra={
                "user": user_id,
                "local_subscription_id": record["id"],
                "old_status": local_status.value,
                "payment_status": payment_status,
            },
        )
        local_status = SubscriptionStatus.active
        updated = True

    return PaymentStatusResponse(
        subscription_id=subscription.id,
        status=subscription.status,
        local_status=local_status,
        payment_status=payment_status,
        payment_intent_status=intent_status,
        updated=updated,
        invoice_paid=bool(invoice.paid) if invoice is not None else False,
    )


async def _mirror_pending(stripe_subscription_id: str, user_id: str) -> dict[str, Any] | None:
    record = await subscriptions_repo.get_by_stripe_id(stripe_subscription_id)
    if not record or str(record.get("user_id")) != user_id:
        return None
    if record["status"] in (
        SubscriptionStatus.pending_payment.value,
        SubscriptionStatus.cancelled.value,
    ):
        return record
    await subscriptions_repo.update_status(record["id"], SubscriptionStatus.pending_payment.value)
    logger.info(
        "Local subscription marked as pending payment",
        extra={
            "user": user_id,
            "local_subscription_id": record["id"],
            "old_status": record["status"],
        },
    )
    return {**record, "status": SubscriptionStatus.pending_payment.value}


async def _local_id(stripe_subscription_id: str | None, user_id: str) -> str | None:
    if not stripe_subscription_id:
        return None
    record = await subscriptions_repo.get_by_stripe_id(stripe_subscription_id)
    if not record or str(record.get("user_id")) != user_id:
        return None
    return record["id"]


async def check_incomplete_payments(user: Mapping[str, Any]) -> IncompletePaymentsResponse:
    """List the customer's Stripe payments that still wait on them, newest first.

    Incomplete subscriptions are scanned first, then open invoices, then the
    customer's payment intents; an intent is reported by the first source that
    mentions it. Local records of incomplete subscriptions are moved back to
    ``pending_payment`` so they can be retried. A source that fails is logged
    and skipped.
    """
    user_id = str(user["id"])
    customer_id = await stripe_customers_repo.get_customer_id_for_user(user_id)
    if not customer_id:
        return IncompletePaymentsResponse(
            incomplete_payments=[], message="No Stripe customer found"
        )

    stripe_gateway.ensure_configured()
    found: dict[str, IncompletePayment] = {}

    try:
        subscriptions = await stripe_gateway.list_incomplete_subscriptions(customer_id)
    except stripe.StripeError as exc:
        classify_stripe_error(exc, action="list incomplete subscriptions")
        subscriptions = []
    for subscription in subscriptions:
        invoice = subscription.invoice
        intent = invoice.intent if invoice is not None else None
        if intent is None or intent.status not in ACTIONABLE_INTENT_STATUSES:
            continue
        record = await _mirror_pending(subscription.id, user_id)
        found[intent.id] = IncompletePayment(
            type=IncompletePaymentSource.subscription,
            payment_intent_id=intent.id,
            payment_intent_status=intent.status,
            client_secret=intent.client_secret,
            subscription_id=subscription.id,
            local_subscription_id=record["id"] if record else None,
            invoice_id=invoice.id,
            amount=invoice.amount_due,
            currency=invoice.currency,
            created=to_datetime(subscription.created),
            metadata=subscription.metadata,
        )

    try:
        invoices = await stripe_gateway.list_open_invoices(customer_id)
    except stripe.StripeError as exc:
        classify_stripe_error(exc, action="list open invoices")
        invoices = []
    for invoice in invoices:
        intent = invoice.intent
        if intent is None or intent.status not in ACTIONABLE_INTENT_STATUSES:
            continue
        if intent.id in found:
            continue
        found[intent.id] = IncompletePayment(
            type=IncompletePaymentSource.invoice,
            payment_intent_id=intent.id,
            payment_intent_status=intent.status,
            client_secret=intent.client_secret,
            subscription_id=invoice.subscription,
            local_subscription_id=await _local_id(invoice.subscription, user_id),
            invoice_id=invoice.id,
            amount=invoice.amount_due,
            currency=invoice.currency,
            created=to_datetime(invoice.created),
        )

    try:
        intents = await stripe_gateway.list_customer_payment_intents(customer_id, limit=10)
    except stripe.StripeError as exc:
        classify_stripe_error(exc, action="list payment intents")
        intents = []
    for intent in intents:
        if intent.status not in ACTIONABLE_INTENT_STATUSES or intent.id in found:
            continue
        found[intent.id] = IncompletePayment(
            type=IncompletePaymentSource.payment_intent,
            payment_intent_id=intent.id,
            payment_intent_status=intent.status,
            client_secret=intent.client_secret,
            amount=intent.amount,
            currency=intent.currency,
            created=to_datetime(intent.created),
            metadata=intent.metadata,
        )

    payments = sorted(found.values(), key=lambda p: p.created or _EPOCH, reverse=True)
    logger.info(
        "Checked for incomplete payments",
        extra={"user": user_id, "customer_id": customer_id, "incomplete_count": len(payments)},
    )
    return IncompletePaymentsResponse(incomplete_payments=payments)


__all__ = ["check_incomplete_payments", "check_payment_status", "retry_payment"]
