from __future__ import annotations

import asyncio
import logging
import time
import weakref
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

import stripe
from psycopg import errors as pg_errors

from .. import metrics
from ..config import settings
from ..repositories import stripe_customers as stripe_customers_repo
from ..repositories import subscriptions as subscriptions_repo
from ..repositories import users as users_repo
from ..schemas.subscriptions import (
    LIVE_STATUSES,
    CancelPendingPaymentResponse,
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
    CleanupPendingResponse,
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    PendingPaymentsResponse,
    SubscriptionListResponse,
    SubscriptionRecord,
    SubscriptionStatus,
)
from ..stripe_mode import resolve_service_price
from . import billing_sync, stripe_gateway
from .billing_errors import (
    DuplicateRequestError,
    DuplicateSubscriptionError,
    SubscriptionNotFoundError,
    SubscriptionValidationError,
    classify_stripe_error,
)
from .coupon_service import normalize_coupon_code, validate_coupon_format
from .payment_outcome import (
    attach_default_payment_method,
    period_bounds,
    resolve_local_status,
    resolve_payment_outcome,
    to_datetime,
)

logger = logging.getLogger(__name__)

DEAD_PROCESSOR_STATUSES = frozenset({"canceled", "incomplete_expired", "unpaid"})

# Entries vanish once no request holds or waits on the lock.
_user_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()


def _user_lock(user_id: str) -> asyncio.Lock:
    """One lock per user serialises the check-then-insert sequence of concurrent checkouts."""
    lock = _user_locks.get(user_id)
    if lock is None:
        lock = asyncio.Lock()
        _user_locks[user_id] = lock
    return lock


def _local_subscription_id(user_id: str) -> str:
    return f"sub_{int(time.time() * 1000)}_{user_id}"


def _age(record: Mapping[str, Any], now: datetime) -> timedelta:
    created_at = record.get("created_at")
    if not isinstance(created_at, datetime):
        return timedelta.max
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return now - created_at


async def create_subscription(
    user: Mapping[str, Any], payload: CreateSubscriptionRequest
) -> CreateSubscriptionResponse:
    user_id = str(user["id"])
    service_key = str(payload.service_id)

    coupon: str | None = None
    if payload.coupon:
        if payload.promotion_code_id:
            coupon = normalize_coupon_code(payload.coupon)
        else:
            coupon = validate_coupon_format(payload.coupon)

    price_id = resolve_service_price(payload.service_id)
    if not price_id:
        raise SubscriptionValidationError("Invalid service ID", code="invalid_service")

    profile = await users_repo.get_billing_profile(user_id)
    if not profile:
        raise SubscriptionNotFoundError("User not found", code="user_not_found")

    customer_id = await stripe_customers_repo.get_customer_id_for_user(user_id)
    if not customer_id:
        raise SubscriptionValidationError(
            "No payment method found. Please add a payment method first.",
            code="payment_method_missing",
        )

    stripe_gateway.ensure_configured()
    await billing_sync.sync_customer_billing(customer_id, profile, user_id=user_id)

    if payload.payment_method_id:
        await attach_default_payment_method(
            customer_id, payload.payment_method_id, user_id=user_id
        )
    else:
        logger.warning(
            "Creating subscription without an explicit payment method",
            extra={"user": user_id, "service_id": service_key},
        )

    async with _user_lock(user_id):
        await _guard_existing(user_id, service_key)

        params = _subscription_params(
            customer_id=customer_id,
            price_id=price_id,
            user_id=user_id,
            service_key=service_key,
            payment_method_id=payload.payment_method_id,
            coupon=coupon,
            promotion_code_id=payload.promotion_code_id,
        )
        try:
            subscription = await stripe_gateway.create_subscription(params)
        except stripe.StripeError as exc:
            raise classify_stripe_error(exc, action="create subscription") from exc

        logger.info(
            "Stripe subscription created",
            extra={
                "user": user_id,
                "service_id": service_key,
                "subscription_id": subscription.id,
                "stripe_status": subscription.status,
            },
        )

        outcome = await resolve_payment_outcome(
            subscription,
            payment_method_id=payload.payment_method_id,
            customer_id=customer_id,
        )
        local_status = resolve_local_status(subscription.status, outcome)
        start_date, end_date = period_bounds(subscription)

        try:
            record = await subscriptions_repo.insert_subscription(
                subscription_id=_local_subscription_id(user_id),
                user_id=user_id,
                service_id=service_key,
                stripe_subscription_id=subscription.id,
                status=local_status.value,
                price=subscription.unit_amount,
                start_date=start_date,
                end_date=end_date,
                renewal_date=end_date,
                metadata={
                    "stripe_price_id": price_id,
                    "stripe_coupon": coupon,
                    "stripe_promotion_code": payload.promotion_code_id,
                },
            )
        except pg_errors.UniqueViolation as exc:
            await _cancel_remote(subscription.id, user_id=user_id)
            raise DuplicateSubscriptionError(
                "You already have an active subscription for this service."
            ) from exc

    metrics.subscriptions_created_total.labels(status=local_status.value).inc()
    logger.info(
        "Subscription mirrored locally",
        extra={
            "user": user_id,
            "service_id": service_key,
            "local_subscription_id": record["id"],
            "local_status": local_status.value,
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


def _subscription_params(
    *,
    customer_id: str,
    price_id: str,
    user_id: str,
    service_key: str,
    payment_method_id: str | None,
    coupon: str | None,
    promotion_code_id: str | None,
) -> dict[str, Any]:
    params: dict[str, Any] = {
        "customer": customer_id,
        "items": [{"price": price_id}],
        "expand": list(stripe_gateway.SUBSCRIPTION_EXPAND),
        "payment_behavior": "default_incomplete",
        "payment_settings": {
            "save_default_payment_method": "on_subscription",
            "payment_method_types": ["card"],
            "payment_method_options": {"card": {"request_three_d_secure": "any"}},
        },
        "metadata": {"user_id": user_id, "service_id": service_key},
    }
    if payment_method_id:
        params["default_payment_method"] = payment_method_id
    if promotion_code_id:
        params["discounts"] = [{"promotion_code": promotion_code_id}]
    elif coupon:
        params["discounts"] = [{"coupon": coupon}]
    return params


async def _guard_existing(user_id: str, service_key: str) -> None:
    """Reject a new subscription when the user already holds or is paying for one."""
    records = await subscriptions_repo.list_for_user_service(user_id, service_key)
    live = next(
        (r for r in records if SubscriptionStatus(r["status"]) in LIVE_STATUSES), None
    )
    if live is not None:
        raise DuplicateSubscriptionError(
            "You already have an active subscription for this service.",
            extra={"subscriptionId": live["id"]},
        )

    now = datetime.now(timezone.utc)
    duplicate_window = timedelta(seconds=settings.subscription_duplicate_window_seconds)
    stale_after = timedelta(minutes=settings.pending_payment_stale_minutes)

    for record in records:
        if record["status"] != SubscriptionStatus.pending_payment.value:
            continue
        age = _age(record, now)
        if age < duplicate_window:
            logger.warning(
                "Duplicate subscription attempt detected",
                extra={"user": user_id, "service_id": service_key, "pending_id": record["id"]},
            )
            raise DuplicateRequestError(
                "A subscription request for this service is already being processed. Please wait."
            )
        if age < stale_after:
            raise DuplicateSubscriptionError(
                "You already have a pending payment for this service. "
                "Complete or cancel it and try again.",
                code="pending_payment_exists",
                extra={"pendingSubscriptionId": record["id"]},
            )

        logger.info(
            "Cancelling stale pending payment",
            extra={"user": user_id, "service_id": service_key, "pending_id": record["id"]},
        )
        if record.get("stripe_subscription_id"):
            await _cancel_remote(record["stripe_subscription_id"], user_id=user_id)
        await subscriptions_repo.update_status(record["id"], SubscriptionStatus.cancelled.value)


async def _cancel_remote(stripe_subscription_id: str, *, user_id: str) -> bool:
    try:
        await stripe_gateway.cancel_subscription(stripe_subscription_id)
    except stripe.StripeError as exc:
        logger.warning(
            "Failed to cancel Stripe subscription",
            extra={
                "user": user_id,
                "subscription_id": stripe_subscription_id,
                "error_type": type(exc).__name__,
                "stripe_code": getattr(exc, "code", None),
            },
        )
        return False
    return True


async def list_subscriptions(user: Mapping[str, Any]) -> SubscriptionListResponse:
    rows = await subscriptions_repo.list_for_user(str(user["id"]))
    return SubscriptionListResponse(
        subscriptions=[SubscriptionRecord.model_validate(row) for row in rows]
    )


async def list_pending(user: Mapping[str, Any]) -> PendingPaymentsResponse:
    rows = await subscriptions_repo.list_by_status(
        str(user["id"]), [SubscriptionStatus.pending_payment.value]
    )
    return PendingPaymentsResponse(
        pending_subscriptions=[SubscriptionRecord.model_validate(row) for row in rows]
    )


async def cancel_pending_payment(
    user: Mapping[str, Any], subscription_id: str
) -> CancelPendingPaymentResponse:
    user_id = str(user["id"])
    record = await subscriptions_repo.get_for_user(subscription_id, user_id)
    if not record:
        raise SubscriptionNotFoundError("Subscription not found")
    if record["status"] != SubscriptionStatus.pending_payment.value:
        raise SubscriptionValidationError(
            "This action is only allowed for pending payment subscriptions",
            code="not_pending_payment",
        )

    if record.get("stripe_subscription_id"):
        stripe_gateway.ensure_configured()
        await _cancel_remote(record["stripe_subscription_id"], user_id=user_id)

    await subscriptions_repo.update_status(record["id"], SubscriptionStatus.cancelled.value)
    logger.info(
        "Pending payment cancelled",
        extra={"user": user_id, "local_subscription_id": record["id"]},
    )
    return CancelPendingPaymentResponse(
        subscription_id=record["id"],
        status=SubscriptionStatus.cancelled,
        message="Pending payment cancelled",
    )


async def cleanup_pending(user: Mapping[str, Any]) -> CleanupPendingResponse:
    """Cancel pending records whose Stripe subscription is gone or can no longer be paid."""
    user_id = str(user["id"])
    records = await subscriptions_repo.list_by_status(
        user_id, [SubscriptionStatus.pending_payment.value]
    )
    if records:
        stripe_gateway.ensure_configured()

    cleaned = 0
    for record in records:
        stripe_id = record.get("stripe_subscription_id")
        remote_status: str | None = None
        if stripe_id:
            try:
                remote_status = (await stripe_gateway.retrieve_subscription(stripe_id)).status
            except stripe.InvalidRequestError as exc:
                if getattr(exc, "http_status", None) != 404:
                    classify_stripe_error(exc, action="retrieve subscription")
                    continue
            except stripe.StripeError as exc:
                classify_stripe_error(exc, action="retrieve subscription")
                continue
            if remote_status is not None and remote_status not in DEAD_PROCESSOR_STATUSES:
                continue

        await subscriptions_repo.update_status(record["id"], SubscriptionStatus.cancelled.value)
        cleaned += 1
        logger.info(
            "Pending payment cleaned up",
            extra={
                "user": user_id,
                "local_subscription_id": record["id"],
                "stripe_status": remote_status,
            },
        )

    return CleanupPendingResponse(total_checked=len(records), cleaned_up=cleaned)


async def cancel_subscription(
    user: Mapping[str, Any], payload: CancelSubscriptionRequest
) -> CancelSubscriptionResponse:
    """Cancel a subscription right away or at the end of the paid period.

    An immediate cancellation marks the record ``cancelled``. A period-end
    cancellation leaves the status alone and moves ``end_date`` to Stripe's
    ``cancel_at``; the ``customer.subscription.deleted`` webhook finishes it.
    """
    user_id = str(user["id"])
    record = await subscriptions_repo.get_for_user(payload.subscription_id, user_id)
    if not record:
        raise SubscriptionNotFoundError("Subscription not found")
    if record["status"] == SubscriptionStatus.cancelled.value:
        raise SubscriptionValidationError(
            "This subscription is already cancelled", code="already_cancelled"
        )
    if record["status"] == SubscriptionStatus.pending_payment.value:
        raise SubscriptionValidationError(
            "This subscription is waiting for payment. Cancel the pending payment instead.",
            code="pending_payment_exists",
        )
    stripe_id = record.get("stripe_subscription_id")
    if not stripe_id:
        raise SubscriptionValidationError(
            "No Stripe subscription associated with this subscription",
            code="missing_processor_reference",
        )

    reason = (payload.reason or "").strip() or None
    cancelled_at = datetime.now(timezone.utc)
    stripe_gateway.ensure_configured()
    try:
        subscription = await stripe_gateway.modify_subscription(
            stripe_id,
            {
                "cancel_at_period_end": not payload.immediate,
                "cancellation_details": {"comment": reason or "User requested cancellation"},
                "metadata": {
                    "cancel_reason": reason or "User requested",
                    "cancelled_by": user_id,
                    "cancelled_at": cancelled_at.isoformat(),
                },
            },
        )
        if payload.immediate:
            subscription = await stripe_gateway.cancel_subscription(stripe_id)
    except stripe.StripeError as exc:
        raise classify_stripe_error(exc, action="cancel subscription") from exc

    if payload.immediate:
        status = SubscriptionStatus.cancelled
        end_date = cancelled_at
        message = "Subscription cancelled immediately"
    else:
        status = SubscriptionStatus(record["status"])
        end_date = to_datetime(subscription.cancel_at) or to_datetime(subscription.period_end)
        message = "Subscription will be cancelled at the end of the billing period"

    await subscriptions_repo.record_cancellation(
        record["id"],
        status.value,
        end_date=end_date,
        metadata={
            "cancel_reason": reason,
            "cancel_at_period_end": not payload.immediate,
            "cancelled_at": cancelled_at.isoformat(),
            "stripe_cancel_at": subscription.cancel_at,
        },
    )
    mode = "immediate" if payload.immediate else "period_end"
    metrics.subscriptions_cancelled_total.labels(mode=mode).inc()
    logger.info(
        "Subscription cancelled",
        extra={
            "user": user_id,
            "local_subscription_id": record["id"],
            "subscription_id": stripe_id,
            "mode": mode,
        },
    )
    return CancelSubscriptionResponse(
        subscription_id=record["id"],
        status=status,
        message=message,
        cancel_at=end_date,
    )


__all__ = [
    "cancel_pending_payment",
    "cancel_subscription",
    "cleanup_pending",
    "create_subscription",
    "list_pending",
    "list_subscriptions",
]
