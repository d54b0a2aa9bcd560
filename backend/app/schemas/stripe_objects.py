"""Typed views of the Stripe payloads the subscription flow reads.

Stripe responses are validated into these models as soon as they come back
from the SDK so that the rest of the code never touches raw dictionaries.
Only the fields the flow needs are declared; everything else is ignored.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StripeModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class PaymentError(StripeModel):
    code: str | None = None
    message: str | None = None
    type: str | None = None


class PaymentIntent(StripeModel):
    id: str
    status: str
    client_secret: str | None = None
    amount: int | None = None
    currency: str | None = None
    created: int | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    next_action: dict[str, Any] | None = None
    last_payment_error: PaymentError | None = None


class SetupIntent(StripeModel):
    id: str
    status: str
    client_secret: str | None = None


class Invoice(StripeModel):
    id: str
    status: str | None = None
    paid: bool = False
    amount_due: int | None = None
    currency: str | None = None
    created: int | None = None
    subscription: str | None = None
    customer: str | None = None
    payment_intent: PaymentIntent | str | None = None

    @field_validator("subscription", "customer", mode="before")
    @classmethod
    def _expandable_id(cls, value):
        if isinstance(value, dict):
            return value.get("id")
        return value

    @property
    def payment_intent_id(self) -> str | None:
        if isinstance(self.payment_intent, PaymentIntent):
            return self.payment_intent.id
        return self.payment_intent

    @property
    def intent(self) -> PaymentIntent | None:
        return self.payment_intent if isinstance(self.payment_intent, PaymentIntent) else None


class Price(StripeModel):
    id: str
    unit_amount: int | None = None
    currency: str | None = None


class SubscriptionItem(StripeModel):
    id: str | None = None
    price: Price | None = None
    quantity: int | None = None
    current_period_start: int | None = None
    current_period_end: int | None = None


class SubscriptionItemList(StripeModel):
    data: list[SubscriptionItem] = Field(default_factory=list)


class Subscription(StripeModel):
    id: str
    status: str
    customer: str | None = None
    created: int | None = None
    cancel_at: int | None = None
    cancel_at_period_end: bool = False
    current_period_start: int | None = None
    current_period_end: int | None = None
    items: SubscriptionItemList = Field(default_factory=SubscriptionItemList)
    latest_invoice: Invoice | str | None = None
    pending_setup_intent: SetupIntent | str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("customer", mode="before")
    @classmethod
    def _expandable_id(cls, value):
        if isinstance(value, dict):
            return value.get("id")
        return value

    @property
    def invoice(self) -> Invoice | None:
        return self.latest_invoice if isinstance(self.latest_invoice, Invoice) else None

    @property
    def first_item(self) -> SubscriptionItem | None:
        return self.items.data[0] if self.items.data else None

    @property
    def period_start(self) -> int | None:
        if self.current_period_start is not None:
            return self.current_period_start
        item = self.first_item
        return item.current_period_start if item else None

    @property
    def period_end(self) -> int | None:
        if self.current_period_end is not None:
            return self.current_period_end
        item = self.first_item
        return item.current_period_end if item else None

    @property
    def unit_amount(self) -> int:
        item = self.first_item
        if item and item.price and item.price.unit_amount is not None:
            return item.price.unit_amount
        return 0


class Coupon(StripeModel):
    id: str
    valid: bool = False
    percent_off: float | None = None
    amount_off: int | None = None
    currency: str | None = None
    duration: str | None = None
    duration_in_months: int | None = None
    name: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class PromotionCode(StripeModel):
    id: str
    code: str
    active: bool = False
    coupon: Coupon


class Event(StripeModel):
    id: str
    type: str
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def object(self) -> dict[str, Any]:
        obj = self.data.get("object")
        return obj if isinstance(obj, dict) else {}


__all__ = [
    "Coupon",
    "Event",
    "Invoice",
    "PaymentIntent",
    "Price",
    "PromotionCode",
    "SetupIntent",
    "PaymentError",
    "Subscription",
    "SubscriptionItem",
]
