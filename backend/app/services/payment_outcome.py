"""Shared payment plumbing for creating and retrying subscriptions.

Covers attaching the customer's card, reading the invoice payment intent to
decide whether the browser must run a 3-D Secure challenge, and mapping
processor statuses onto the local subscription status set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import stripe

from ..config import settings
from ..schemas import stripe_objects as so
from ..schemas.subscriptions import SubscriptionStatus
from . import stripe_gateway
from .billing_errors import classify_stripe_error

logger = logging.getLogger(__name__)

STEP_UP_STATUSES = frozenset({"requires_action", "requires_confirmation"})
REPAYABLE_INTENT_STATUSES = frozenset({"requires_payment_method", "requires_confirmation"})


@dataclass
class PaymentOutcome:
    payment_status: str = "processing"
    requires_action: bool = False
    client_secret: str | None = None
    payment_intent_id: str | None = None

    def apply_intent(self, intent: so.PaymentIntent) -> None:
        self.payment_status = intent.status
        self.payment_intent_id = intent.id
        if intent.status in STEP_UP_STATUSES and intent.client_secret:
            self.requires_action = True
            self.client_secret = intent.client_secret


def map_processor_status(processor_status: str | None) -> SubscriptionStatus:
    """Three-way map: active stays active, trialing becomes trial, anything else is inactive."""
    if processor_status == "active":
        return SubscriptionStatus.active
    if processor_status == "trialing":
        return SubscriptionStatus.trial
    return SubscriptionStatus.inactive


def resolve_local_status(processor_status: str | None, outcome: PaymentOutcome) -> SubscriptionStatus:
    if outcome.payment_status == "succeeded":
        return SubscriptionStatus.active
    if processor_status == "trialing":
        return SubscriptionStatus.trial
    if outcome.requires_action or processor_status == "incomplete":
        return SubscriptionStatus.pending_payment
    return map_processor_status(processor_status)


def to_datetime(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def period_bounds(
    subscription: so.Subscription, *, now: datetime | None = None
) -> tuple[datetime, datetime]:
    now = now or datetime.now(timezone.utc)
    start = to_datetime(subscription.period_start) or now
    end = to_datetime(subscription.period_end) or now + timedelta(
        days=settings.subscription_default_period_days
    )
    return start, end


async def attach_default_payment_method(
    customer_id: str, payment_method_id: str, *, user_id: str
) -> None:
    try:
        await stripe_gateway.attach_payment_method(payment_method_id, customer_id)
    except stripe.InvalidRequestError as exc:
        if getattr(exc, "code", None) != "resource_already_attached":
            raise classify_stripe_error(exc, action="attach payment method") from exc
        logger.info(
            "Payment method already attached to customer",
            extra={"user": user_id, "customer_id": customer_id},
        )
    except stripe.StripeError as exc:
        raise classify_stripe_error(exc, action="attach payment method") from exc

    try:
        await stripe_gateway.set_default_payment_method(customer_id, payment_method_id)
    except stripe.StripeError as exc:
        raise classify_stripe_error(exc, action="set default payment method") from exc


async def load_intent(ref: so.PaymentIntent | str) -> so.PaymentIntent:
    if isinstance(ref, so.PaymentIntent):
        return ref
    return await stripe_gateway.retrieve_payment_intent(ref)


async def find_step_up_intent(
    invoice_id: str, subscription_id: str, customer_id: str | None
) -> so.PaymentIntent | None:
    """Locate the intent Stripe created when paying an invoice that needs authentication.

    Looks at the refreshed invoice first, then at the subscription's latest
    invoice, then at the customer's most recent intents.
    """
    try:
        invoice = await stripe_gateway.retrieve_invoice(invoice_id)
        if invoice.payment_intent:
            return await load_intent(invoice.payment_intent)

        subscription = await stripe_gateway.retrieve_subscription(subscription_id)
        latest = subscription.invoice
        if latest is not None and latest.payment_intent:
            return await load_intent(latest.payment_intent)

        if customer_id:
            for intent in await stripe_gateway.list_customer_payment_intents(customer_id):
                if intent.status == "requires_action" and intent.client_secret:
                    return intent
    except stripe.StripeError as exc:
        classify_stripe_error(exc, action="locate payment intent")
    return None


async def pay_open_invoice(
    invoice: so.Invoice,
    *,
    subscription_id: str,
    payment_method_id: str | None,
    customer_id: str | None,
    outcome: PaymentOutcome,
) -> None:
    try:
        paid = await stripe_gateway.pay_invoice(invoice.id, payment_method_id)
    except stripe.StripeError as exc:
        if getattr(exc, "code", None) != "invoice_payment_intent_requires_action":
            raise
        logger.info(
            "Invoice payment needs authentication",
            extra={"invoice_id": invoice.id, "subscription_id": subscription_id},
        )
        intent = await find_step_up_intent(invoice.id, subscription_id, customer_id)
        if intent is not None:
            outcome.apply_intent(intent)
        return

    if paid.payment_intent:
        outcome.apply_intent(await load_intent(paid.payment_intent))
    elif paid.paid:
        outcome.payment_status = "succeeded"


async def resolve_payment_outcome(
    subscription: so.Subscription,
    *,
    payment_method_id: str | None,
    customer_id: str | None,
) -> PaymentOutcome:
    """Inspect a freshly created subscription and decide what the browser must do next."""
    outcome = PaymentOutcome()
    invoice = subscription.invoice

    if subscription.status == "active":
        outcome.payment_status = "succeeded"
    elif subscription.status == "incomplete" and invoice is not None and invoice.payment_intent:
        outcome.apply_intent(await load_intent(invoice.payment_intent))
    elif subscription.status == "incomplete" and invoice is not None:
        try:
            await pay_open_invoice(
                invoice,
                subscription_id=subscription.id,
                payment_method_id=payment_method_id,
                customer_id=customer_id,
                outcome=outcome,
            )
        except stripe.StripeError as exc:
            # The subscription exists remotely; it is mirrored as pending and can be retried.
            classify_stripe_error(exc, action="pay invoice")
    elif subscription.status == "incomplete":
        logger.warning(
            "Incomplete subscription without an invoice",
            extra={"subscription_id": subscription.id},
        )

    setup_intent = subscription.pending_setup_intent
    if isinstance(setup_intent, so.SetupIntent) and setup_intent.status in STEP_UP_STATUSES:
        outcome.requires_action = True
        outcome.client_secret = setup_intent.client_secret

    return outcome


__all__ = [
    "PaymentOutcome",
    "STEP_UP_STATUSES",
    "attach_default_payment_method",
    "find_step_up_intent",
    "load_intent",
    "map_processor_status",
    "pay_open_invoice",
    "period_bounds",
    "resolve_local_status",
    "resolve_payment_outcome",
    "to_datetime",
]
