"""Stripe webhook reconciliation for mirrored subscriptions.

Stripe is the source of truth for renewals, failed charges and cancellations
that happen after checkout. Each signed event is stored once in
``app.payment_events`` so redeliveries are acknowledged without being applied
twice.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

import stripe

from .. import metrics
from ..repositories import payment_events as payment_events_repo
from ..repositories import stripe_customers as stripe_customers_repo
from ..repositories import subscriptions as subscriptions_repo
from ..schemas import stripe_objects as so
from ..schemas.subscriptions import SubscriptionStatus, WebhookAck
from ..stripe_mode import StripeConfigurationError, resolve_webhook_secret
from . import stripe_gateway
from .billing_errors import SubscriptionConfigError, SubscriptionValidationError
from .payment_outcome import to_datetime

logger = logging.getLogger(__name__)

ENDED_PROCESSOR_STATUSES = frozenset({"canceled", "incomplete_expired"})


async def handle_webhook(payload: bytes, signature: str | None) -> WebhookAck:
    try:
        secret = resolve_webhook_secret()
    except StripeConfigurationError as exc:
        raise SubscriptionConfigError("Stripe webhook secret missing") from exc
    if not signature:
        raise SubscriptionValidationError("Missing Stripe signature", code="invalid_signature")

    try:
        event = stripe_gateway.construct_event(payload, signature, secret)
    except ValueError as exc:
        raise SubscriptionValidationError("Invalid Stripe payload", code="invalid_payload") from exc
    except stripe.SignatureVerificationError as exc:
        raise SubscriptionValidationError(
            "Invalid Stripe signature", code="invalid_signature"
        ) from exc

    return await process_event(event)


async def process_event(event: so.Event) -> WebhookAck:
    first_delivery = await payment_events_repo.record_event(
        event.id, event.type, event.model_dump()
    )
    if not first_delivery:
        metrics.webhook_events_total.labels(event_type=event.type, result="duplicate").inc()
        logger.info("Ignoring redelivered Stripe event", extra={"event_id": event.id})
        return WebhookAck(duplicate=True)

    try:
        result = await _dispatch(event)
    except Exception:
        # Let Stripe redeliver an event whose processing blew up.
        await payment_events_repo.forget_event(event.id)
        metrics.webhook_events_total.labels(event_type=event.type, result="error").inc()
        raise

    metrics.webhook_events_total.labels(event_type=event.type, result=result).inc()
    return WebhookAck()


async def _dispatch(event: so.Event) -> str:
    data = event.object
    if event.type in {"customer.subscription.created", "customer.subscription.updated"}:
        return await _sync_subscription(so.Subscription.model_validate(data))
    if event.type == "customer.subscription.deleted":
        return await _sync_subscription(
            so.Subscription.model_validate(data), override=SubscriptionStatus.cancelled
        )
    if event.type in {"invoice.payment_succeeded", "invoice.paid"}:
        return await _invoice_paid(so.Invoice.model_validate(data))
    if event.type == "invoice.payment_failed":
        return await _invoice_failed(so.Invoice.model_validate(data))
    logger.debug("Unhandled Stripe event: %s", event.type)
    return "ignored"


def webhook_status(processor_status: str) -> SubscriptionStatus | None:
    """Local status for a processor subscription status; None leaves the record as is."""
    if processor_status == "active":
        return SubscriptionStatus.active
    if processor_status == "trialing":
        return SubscriptionStatus.trial
    if processor_status == "incomplete":
        return None
    if processor_status in ENDED_PROCESSOR_STATUSES:
        return SubscriptionStatus.cancelled
    return SubscriptionStatus.inactive


async def _find_record(stripe_subscription_id: str | None, customer_id: str | None):
    record = None
    if stripe_subscription_id:
        record = await subscriptions_repo.get_by_stripe_id(stripe_subscription_id)
    if record is None:
        user_id = (
            await stripe_customers_repo.get_user_id_by_customer(customer_id)
            if customer_id
            else None
        )
        logger.warning(
            "Stripe event does not match a local subscription",
            extra={
                "subscription_id": stripe_subscription_id,
                "customer_id": customer_id,
                "user": user_id,
            },
        )
    return record


async def _apply(
    record: Mapping[str, Any],
    status: SubscriptionStatus,
    subscription: so.Subscription | None = None,
) -> str:
    current = record["status"]
    start = to_datetime(subscription.period_start) if subscription else None
    end = to_datetime(subscription.period_end) if subscription else None
    if current == status.value and start is None and end is None:
        return "unchanged"

    await subscriptions_repo.update_status(
        record["id"], status.value, start_date=start, end_date=end, renewal_date=end
    )
    logger.info(
        "Subscription reconciled from Stripe event",
        extra={
            "local_subscription_id": record["id"],
            "old_status": current,
            "new_status": status.value,
        },
    )
    return "applied"


async def _sync_subscription(
    subscription: so.Subscription, *, override: SubscriptionStatus | None = None
) -> str:
    record = await _find_record(subscription.id, subscription.customer)
    if record is None:
        return "unmatched"
    status = override or webhook_status(subscription.status)
    if status is None:
        return "unchanged"
    return await _apply(record, status, subscription)


async def _invoice_paid(invoice: so.Invoice) -> str:
    record = await _find_record(invoice.subscription, invoice.customer)
    if record is None:
        return "unmatched"
    if record["status"] == SubscriptionStatus.cancelled.value:
        return "unchanged"
    return await _apply(record, SubscriptionStatus.active)


async def _invoice_failed(invoice: so.Invoice) -> str:
    record = await _find_record(invoice.subscription, invoice.customer)
    if record is None:
        return "unmatched"
    # First charge failures stay pending so the customer can retry.
    if record["status"] != SubscriptionStatus.active.value:
        return "unchanged"
    return await _apply(record, SubscriptionStatus.inactive)


__all__ = ["handle_webhook", "process_event", "webhook_status"]
