"""Async wrappers around the blocking Stripe SDK.

Each call runs in the threadpool and its response is validated into the typed
models from ``schemas.stripe_objects`` before being handed back.
"""

from __future__ import annotations

from typing import Any, Mapping

import stripe
from starlette.concurrency import run_in_threadpool

from ..schemas import stripe_objects as so
from ..stripe_mode import StripeConfigurationError, StripeContext, configure_stripe
from .billing_errors import SubscriptionConfigError

SUBSCRIPTION_EXPAND = ["latest_invoice.payment_intent", "pending_setup_intent"]


def ensure_configured() -> StripeContext:
    try:
        return configure_stripe()
    except StripeConfigurationError as exc:
        raise SubscriptionConfigError(str(exc)) from exc


def _plain(obj: Any) -> Any:
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict") and not isinstance(obj, Mapping):
        return obj.to_dict()
    return obj


async def attach_payment_method(payment_method_id: str, customer_id: str) -> None:
    def _attach() -> Any:
        return stripe.PaymentMethod.attach(payment_method_id, customer=customer_id)

    await run_in_threadpool(_attach)


async def set_default_payment_method(customer_id: str, payment_method_id: str) -> None:
    def _modify() -> Any:
        return stripe.Customer.modify(
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
        )

    await run_in_threadpool(_modify)


async def update_customer(customer_id: str, fields: Mapping[str, Any]) -> None:
    def _modify() -> Any:
        return stripe.Customer.modify(customer_id, **dict(fields))

    await run_in_threadpool(_modify)


async def create_subscription(params: Mapping[str, Any]) -> so.Subscription:
    def _create() -> Any:
        return stripe.Subscription.create(**dict(params))

    return so.Subscription.model_validate(_plain(await run_in_threadpool(_create)))


async def retrieve_subscription(subscription_id: str) -> so.Subscription:
    def _retrieve() -> Any:
        return stripe.Subscription.retrieve(subscription_id, expand=SUBSCRIPTION_EXPAND)

    return so.Subscription.model_validate(_plain(await run_in_threadpool(_retrieve)))


async def cancel_subscription(subscription_id: str) -> so.Subscription:
    def _cancel() -> Any:
        return stripe.Subscription.cancel(subscription_id)

    return so.Subscription.model_validate(_plain(await run_in_threadpool(_cancel)))


async def modify_subscription(subscription_id: str, params: Mapping[str, Any]) -> so.Subscription:
    def _modify() -> Any:
        return stripe.Subscription.modify(subscription_id, **dict(params))

    return so.Subscription.model_validate(_plain(await run_in_threadpool(_modify)))


async def list_incomplete_subscriptions(customer_id: str) -> list[so.Subscription]:
    def _list() -> Any:
        return stripe.Subscription.list(
            customer=customer_id,
            status="incomplete",
            expand=["data.latest_invoice.payment_intent"],
        )

    payload = _plain(await run_in_threadpool(_list))
    data = payload.get("data") if isinstance(payload, Mapping) else None
    return [so.Subscription.model_validate(item) for item in data or []]


async def retrieve_payment_intent(payment_intent_id: str) -> so.PaymentIntent:
    def _retrieve() -> Any:
        return stripe.PaymentIntent.retrieve(payment_intent_id)

    return so.PaymentIntent.model_validate(_plain(await run_in_threadpool(_retrieve)))


async def confirm_payment_intent(
    payment_intent_id: str, payment_method_id: str, return_url: str | None
) -> so.PaymentIntent:
    def _confirm() -> Any:
        stripe.PaymentIntent.modify(payment_intent_id, payment_method=payment_method_id)
        params: dict[str, Any] = {"payment_method": payment_method_id}
        if return_url:
            params["return_url"] = return_url
        return stripe.PaymentIntent.confirm(payment_intent_id, **params)

    return so.PaymentIntent.model_validate(_plain(await run_in_threadpool(_confirm)))


async def list_customer_payment_intents(customer_id: str, limit: int = 5) -> list[so.PaymentIntent]:
    def _list() -> Any:
        return stripe.PaymentIntent.list(customer=customer_id, limit=limit)

    payload = _plain(await run_in_threadpool(_list))
    data = payload.get("data") if isinstance(payload, Mapping) else None
    return [so.PaymentIntent.model_validate(item) for item in data or []]


async def pay_invoice(invoice_id: str, payment_method_id: str | None) -> so.Invoice:
    def _pay() -> Any:
        params: dict[str, Any] = {"expand": ["payment_intent"]}
        if payment_method_id:
            params["payment_method"] = payment_method_id
        return stripe.Invoice.pay(invoice_id, **params)

    return so.Invoice.model_validate(_plain(await run_in_threadpool(_pay)))


async def list_open_invoices(customer_id: str) -> list[so.Invoice]:
    def _list() -> Any:
        return stripe.Invoice.list(
            customer=customer_id, status="open", expand=["data.payment_intent"]
        )

    payload = _plain(await run_in_threadpool(_list))
    data = payload.get("data") if isinstance(payload, Mapping) else None
    return [so.Invoice.model_validate(item) for item in data or []]


async def retrieve_invoice(invoice_id: str) -> so.Invoice:
    def _retrieve() -> Any:
        return stripe.Invoice.retrieve(invoice_id, expand=["payment_intent"])

    return so.Invoice.model_validate(_plain(await run_in_threadpool(_retrieve)))


async def retrieve_coupon(coupon_id: str) -> so.Coupon:
    def _retrieve() -> Any:
        return stripe.Coupon.retrieve(coupon_id)

    return so.Coupon.model_validate(_plain(await run_in_threadpool(_retrieve)))


async def find_promotion_code(code: str) -> so.PromotionCode | None:
    def _list() -> Any:
        return stripe.PromotionCode.list(code=code, active=True, limit=1)

    payload = _plain(await run_in_threadpool(_list))
    data = payload.get("data") if isinstance(payload, Mapping) else None
    if not data:
        return None
    return so.PromotionCode.model_validate(data[0])


def construct_event(payload: bytes, signature: str, secret: str) -> so.Event:
    event = stripe.Webhook.construct_event(
        payload=payload.decode("utf-8"),
        sig_header=signature,
        secret=secret,
    )
    return so.Event.model_validate(_plain(event))


__all__ = [
    "attach_payment_method",
    "cancel_subscription",
    "confirm_payment_intent",
    "construct_event",
    "create_subscription",
    "ensure_configured",
    "find_promotion_code",
    "list_customer_payment_intents",
    "list_incomplete_subscriptions",
    "list_open_invoices",
    "modify_subscription",
    "pay_invoice",
    "retrieve_coupon",
    "retrieve_invoice",
    "retrieve_payment_intent",
    "retrieve_subscription",
    "set_default_payment_method",
    "update_customer",
]
