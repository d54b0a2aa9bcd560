from __future__ import annotations

from fastapi import APIRouter

from ..auth import CurrentUser
from ..schemas.subscriptions import (
    CancelPendingPaymentRequest,
    CancelPendingPaymentResponse,
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
    CleanupPendingResponse,
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    IncompletePaymentsResponse,
    PaymentStatusRequest,
    PaymentStatusResponse,
    PendingPaymentsResponse,
    RetryPaymentRequest,
    SubscriptionListResponse,
)
from ..services import payment_service, subscription_service

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


@router.get("", response_model=SubscriptionListResponse)
async def list_subscriptions(current: CurrentUser) -> SubscriptionListResponse:
    return await subscription_service.list_subscriptions(current)


@router.post("/create-stripe-subscription", response_model=CreateSubscriptionResponse)
async def create_stripe_subscription(
    payload: CreateSubscriptionRequest, current: CurrentUser
) -> CreateSubscriptionResponse:
    return await subscription_service.create_subscription(current, payload)


@router.post("/retry-payment", response_model=CreateSubscriptionResponse)
async def retry_payment(
    payload: RetryPaymentRequest, current: CurrentUser
) -> CreateSubscriptionResponse:
    return await payment_service.retry_payment(current, payload)


@router.post("/check-payment-status", response_model=PaymentStatusResponse)
async def check_payment_status(
    payload: PaymentStatusRequest, current: CurrentUser
) -> PaymentStatusResponse:
    return await payment_service.check_payment_status(current, payload.subscription_id)


@router.get("/pending-payments", response_model=PendingPaymentsResponse)
async def pending_payments(current: CurrentUser) -> PendingPaymentsResponse:
    return await subscription_service.list_pending(current)


@router.post("/cancel-pending-payment", response_model=CancelPendingPaymentResponse)
async def cancel_pending_payment(
    payload: CancelPendingPaymentRequest, current: CurrentUser
) -> CancelPendingPaymentResponse:
    return await subscription_service.cancel_pending_payment(current, payload.subscription_id)


@router.post("/cleanup-pending", response_model=CleanupPendingResponse)
async def cleanup_pending(current: CurrentUser) -> CleanupPendingResponse:
    return await subscription_service.cleanup_pending(current)


@router.post("/cancel-stripe-subscription", response_model=CancelSubscriptionResponse)
async def cancel_stripe_subscription(
    payload: CancelSubscriptionRequest, current: CurrentUser
) -> CancelSubscriptionResponse:
    return await subscription_service.cancel_subscription(current, payload)


@router.get("/check-incomplete-payments", response_model=IncompletePaymentsResponse)
async def check_incomplete_payments(current: CurrentUser) -> IncompletePaymentsResponse:
    return await payment_service.check_incomplete_payments(current)
