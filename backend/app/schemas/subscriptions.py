from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator
from pydantic.alias_generators import to_camel


class SubscriptionStatus(str, Enum):
    active = "active"
    trial = "trial"
    inactive = "inactive"
    cancelled = "cancelled"
    pending_payment = "pending_payment"


LIVE_STATUSES = frozenset({SubscriptionStatus.active, SubscriptionStatus.trial})


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateSubscriptionRequest(CamelModel):
    service_id: StrictInt = Field(gt=0)
    payment_method_id: str | None = None
    coupon: str | None = None
    promotion_code_id: str | None = None

    @field_validator("payment_method_id", "coupon", "promotion_code_id", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class RetryPaymentRequest(CamelModel):
    subscription_id: str = Field(min_length=1)
    payment_method_id: str = Field(min_length=1)


class PaymentStatusRequest(CamelModel):
    subscription_id: str = Field(min_length=1)


class CancelPendingPaymentRequest(CamelModel):
    subscription_id: str = Field(min_length=1)


class CancelSubscriptionRequest(CamelModel):
    subscription_id: str = Field(min_length=1)
    reason: str | None = Field(default=None, max_length=500)
    immediate: bool = False


class CreateSubscriptionResponse(CamelModel):
    """Result of creating or retrying a subscription payment."""

    subscription_id: str
    status: str
    local_subscription_id: str
    requires_action: bool = False
    client_secret: str | None = None
    payment_status: str | None = None


class PaymentStatusResponse(CamelModel):
    subscription_id: str
    status: str
    local_status: SubscriptionStatus
    payment_status: str = "unknown"
    payment_intent_status: str | None = None
    updated: bool = False
    invoice_paid: bool = False


class SubscriptionRecord(CamelModel):
    id: str
    user_id: str
    service_id: str
    stripe_subscription_id: str | None = None
    status: SubscriptionStatus
    price: int = 0
    start_date: datetime | None = None
    end_date: datetime | None = None
    renewal_date: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("user_id", "service_id", mode="before")
    @classmethod
    def _coerce_str(cls, value):
        return str(value) if value is not None else value


class SubscriptionListResponse(CamelModel):
    subscriptions: list[SubscriptionRecord]


class PendingPaymentsResponse(CamelModel):
    pending_subscriptions: list[SubscriptionRecord]


class CancelPendingPaymentResponse(CamelModel):
    success: bool = True
    subscription_id: str
    status: SubscriptionStatus
    message: str


class CleanupPendingResponse(CamelModel):
    total_checked: int
    cleaned_up: int


class CancelSubscriptionResponse(CamelModel):
    success: bool = True
    subscription_id: str
    status: SubscriptionStatus
    message: str
    cancel_at: datetime | None = None


class IncompletePaymentSource(str, Enum):
    subscription = "subscription"
    invoice = "invoice"
    payment_intent = "payment_intent"


class IncompletePayment(CamelModel):
    """A Stripe payment still waiting on the customer, with what is needed to resume it."""

    type: IncompletePaymentSource
    payment_intent_id: str
    payment_intent_status: str
    client_secret: str | None = None
    subscription_id: str | None = None
    local_subscription_id: str | None = None
    invoice_id: str | None = None
    amount: int | None = None
    currency: str | None = None
    created: datetime | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class IncompletePaymentsResponse(CamelModel):
    incomplete_payments: list[IncompletePayment]
    message: str | None = None


class CouponValidationRequest(CamelModel):
    coupon_code: str = Field(min_length=1)


class CouponValidationResult(CamelModel):
    valid: bool = True
    percent_off: float | None = None
    amount_off: int | None = None
    currency: str | None = None
    duration: str | None = None
    duration_in_months: int | None = None
    name: str | None = None
    promotion_code_id: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class WebhookAck(BaseModel):
    received: bool = True
    duplicate: bool = False
