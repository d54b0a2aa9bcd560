"""Checkout client driven against the real app, with Stripe and the database faked."""

import pytest
from httpx import ASGITransport

from app.auth import create_access_token
from app.client import (
    BatchOutcome,
    CartItem,
    CartStore,
    CheckoutItemError,
    CheckoutOrchestrator,
    ConfirmationOutcome,
    DashboardApiClient,
    PaymentConfirmationHandler,
    pending_from_incomplete,
)
from app.main import app

pytestmark = pytest.mark.anyio("asyncio")


class BrowserConfirmer:
    """Completes 3-D Secure the way a customer would in the browser."""

    def __init__(self, fake_stripe) -> None:
        self.fake_stripe = fake_stripe
        self.secrets: list[str] = []

    async def confirm_card_payment(self, client_secret: str) -> ConfirmationOutcome:
        self.secrets.append(client_secret)
        intent_id = client_secret.split("_secret_", 1)[0]
        for subscription_id, subscription in self.fake_stripe.subscriptions.items():
            invoice = self.fake_stripe.invoices.get(subscription.get("latest_invoice"), {})
            if invoice.get("payment_intent") == intent_id:
                self.fake_stripe.complete_payment(subscription_id)
        return ConfirmationOutcome(intent_id=intent_id, status="succeeded")


@pytest.fixture
async def api(store):
    store.add_user("ana")
    async with DashboardApiClient(
        "http://testserver",
        create_access_token("ana"),
        transport=ASGITransport(app=app),
    ) as client:
        yield client


def _cart(*service_ids: int) -> CartStore:
    cart = CartStore()
    for service_id in service_ids:
        cart.add_item(CartItem(service_id=service_id, name=f"Service {service_id}", price=4900))
    return cart


async def test_cart_checkout_creates_active_subscriptions(api, store, fake_stripe):
    cart = _cart(7, 8)
    orchestrator = CheckoutOrchestrator(
        api, PaymentConfirmationHandler(api, BrowserConfirmer(fake_stripe)), cart
    )

    result = await orchestrator.submit(cart.items, "pm_123", "SAVE10", billing_complete=True)

    assert result.outcome is BatchOutcome.active
    assert result.success
    assert cart.items == []
    assert sorted(row["status"] for row in store.records_for("ana")) == ["active", "active"]
    assert all(
        params["discounts"] == [{"coupon": "SAVE10"}]
        for _, params in fake_stripe.called("Subscription.create")
    )


async def test_three_d_secure_checkout_ends_active(api, store, fake_stripe):
    fake_stripe.next_status = "incomplete"
    fake_stripe.next_intent_status = "requires_action"
    confirmer = BrowserConfirmer(fake_stripe)
    cart = _cart(7)
    orchestrator = CheckoutOrchestrator(api, PaymentConfirmationHandler(api, confirmer), cart)

    result = await orchestrator.submit(cart.items, "pm_123", billing_complete=True)

    assert result.outcome is BatchOutcome.requires_action
    assert confirmer.secrets == ["pi_test_1_secret_abc"]
    (verified,) = result.verified
    assert verified.updated is True
    assert result.success
    assert cart.items == []
    assert store.records_for("ana")[0]["status"] == "active"


async def test_duplicate_item_stops_checkout_with_server_message(api, store, fake_stripe):
    store.add_subscription("ana", "8", "active")
    cart = _cart(7, 8, 9)
    orchestrator = CheckoutOrchestrator(
        api, PaymentConfirmationHandler(api, BrowserConfirmer(fake_stripe)), cart
    )

    with pytest.raises(CheckoutItemError) as excinfo:
        await orchestrator.submit(cart.items, "pm_123", billing_complete=True)

    assert excinfo.value.created_count == 1
    assert excinfo.value.code == "duplicate_subscription"
    assert [item.service_id for item in cart.items] == [8, 9]
    assert len(fake_stripe.called("Subscription.create")) == 1


async def test_pending_item_is_retried_on_next_checkout(api, store, fake_stripe):
    fake_stripe.next_status = "incomplete"
    fake_stripe.next_intent_status = "requires_payment_method"
    cart = _cart(7)
    orchestrator = CheckoutOrchestrator(
        api, PaymentConfirmationHandler(api, BrowserConfirmer(fake_stripe)), cart
    )

    first = await orchestrator.submit(cart.items, "pm_declined", billing_complete=True)
    assert first.outcome is BatchOutcome.incomplete
    (item,) = cart.items
    assert item.is_pending_payment is True

    second = await orchestrator.submit(cart.items, "pm_good", "SAVE10", billing_complete=True)

    assert second.success
    assert cart.items == []
    assert len(fake_stripe.called("Subscription.create")) == 1
    assert fake_stripe.called("PaymentIntent.confirm")[0][1]["payment_method"] == "pm_good"
    assert store.records_for("ana")[0]["status"] == "active"


async def test_abandoned_authentication_is_resumed_from_incomplete_payments(
    api, store, fake_stripe
):
    fake_stripe.next_status = "incomplete"
    fake_stripe.next_intent_status = "requires_action"
    created = await api.create_subscription(7, "pm_123")
    assert created.requires_action is True

    payments = await api.incomplete_payments()
    pending = pending_from_incomplete(payments)
    assert [entry.subscription_id for entry in pending] == [created.subscription_id]

    confirmer = BrowserConfirmer(fake_stripe)
    (verified,) = await PaymentConfirmationHandler(api, confirmer).confirm_all(pending)

    assert verified.updated is True
    assert store.records_for("ana")[0]["status"] == "active"
    assert await api.incomplete_payments() == []


async def test_checked_out_subscription_can_be_cancelled(api, store, fake_stripe):
    cart = _cart(7)
    orchestrator = CheckoutOrchestrator(
        api, PaymentConfirmationHandler(api, BrowserConfirmer(fake_stripe)), cart
    )
    result = await orchestrator.submit(cart.items, "pm_123", billing_complete=True)
    local_id = result.results[0].response.local_subscription_id

    cancelled = await api.cancel_subscription(local_id, immediate=True, reason="Switching plans")

    assert cancelled.status.value == "cancelled"
    assert store.records_for("ana")[0]["status"] == "cancelled"
    (_, kwargs), = fake_stripe.called("Subscription.modify")
    assert kwargs["cancellation_details"] == {"comment": "Switching plans"}
