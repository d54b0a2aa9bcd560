from .billing import BillingDetails, ParsedAddress
from .subscriptions import (
    LIVE_STATUSES,
    CancelPendingPaymentRequest,
    CancelPendingPaymentResponse,
    CleanupPendingResponse,
    CouponValidationRequest,
    CouponValidationResult,
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    PaymentStatusRequest,
    PaymentStatusResponse,
    PendingPaymentsResponse,
    RetryPaymentRequest,
    SubscriptionListResponse,
    SubscriptionRecord,
    SubscriptionStatus,
    WebhookAck,
)

__all__ = [
    "LIVE_STATUSES",
    "BillingDetails",
    "CancelPendingPaymentRequest",
    "CancelPendingPaymentResponse",
    "CleanupPendingResponse",
    "CouponValidationRequest",
    "CouponValidationResult",
    "CreateSubscriptionRequest",
    "CreateSubscriptionResponse",
    "ParsedAddress",
    "PaymentStatusRequest",
    "PaymentStatusResponse",
    "PendingPaymentsResponse",
    "RetryPaymentRequest",
    "SubscriptionListResponse",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "WebhookAck",
]
