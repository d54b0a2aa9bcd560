from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone
from typing import Any

import stripe
from psycopg import errors as pg_errors

from app.auth import create_access_token

PERIOD_START = 1735689600
PERIOD_END = 1738368000


def auth_headers(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


class FakeStore:
    """In-memory stand-in for the repository layer, including the live-subscription unique index."""

    def __init__(self) -> None:
        self.users: dict[str, dict[str, Any]] = {}
        self.billing: dict[str, dict[str, Any]] = {}
        self.customers: dict[str, str] = {}
        self.subscriptions: list[dict[str, Any]] = []
        self.events: dict[str, dict[str, Any]] = {}

    def add_user(
        self,
        user_id: str,
        *,
        customer_id: str | None = "cus_test",
        billing: dict[str, Any] | None = None,
    ) -> str:
        self.users[user_id] = {
            "id": user_id,
            "email": f"{user_id}@example.com",
            "display_name": user_id.title(),
        }
        if customer_id:
            self.customers[user_id] = customer_id
        self.billing[user_id] = billing or {
            "billing_name": "Ana Popescu",
            "billing_company": None,
            "billing_vat": None,
            "billing_address": "Str. Lalelelor 5, Cluj-Napoca, Cluj, 400001",
            "billing_phone": "+40700000000",
        }
        return user_id

    def add_subscription(
        self,
        user_id: str,
        service_id: str,
        status: str,
        *,
        stripe_subscription_id: str | None = None,
        age: timedelta = timedelta(0),
        subscription_id: str | None = None,
    ) -> dict[str, Any]:
        created = datetime.now(timezone.utc) - age
        row = {
            "id": subscription_id or f"sub_local_{len(self.subscriptions) + 1}",
            "user_id": user_id,
            "service_id": service_id,
            "stripe_subscription_id": stripe_subscription_id,
            "status": status,
            "price": 4900,
            "start_date": created,
            "end_date": created + timedelta(days=30),
            "renewal_date": created + timedelta(days=30),
            "metadata": {},
            "created_at": created,
            "updated_at": created,
        }
        self.subscriptions.append(row)
        return row

    def records_for(self, user_id: str, service_id: str | None = None) -> list[dict[str, Any]]:
        return [
            row
            for row in self.subscriptions
            if row["user_id"] == user_id and (service_id is None or row["service_id"] == service_id)
        ]

    def _check_live_unique(self, user_id: str, service_id: str, exclude: str | None = None) -> None:
        for row in self.subscriptions:
            if (
                row["id"] != exclude
                and row["user_id"] == user_id
                and row["service_id"] == service_id
                and row["status"] in {"active", "trial"}
            ):
                raise pg_errors.UniqueViolation("subscriptions_one_live_per_service")

    # repository functions

    async def get_user(self, user_id):
        user = self.users.get(str(user_id))
        return dict(user) if user else None

    async def get_billing_profile(self, user_id):
        user = self.users.get(str(user_id))
        if not user:
            return None
        return {**user, **self.billing.get(str(user_id), {})}

    async def get_customer_id_for_user(self, user_id):
        return self.customers.get(str(user_id))

    async def get_user_id_by_customer(self, customer_id):
        for user_id, known in self.customers.items():
            if known == customer_id:
                return user_id
        return None

    async def list_for_user(self, user_id):
        return [dict(row) for row in self.records_for(user_id)]

    async def list_for_user_service(self, user_id, service_id):
        return [dict(row) for row in self.records_for(user_id, service_id)]

    async def list_by_status(self, user_id, statuses):
        wanted = set(statuses)
        return [dict(row) for row in self.records_for(user_id) if row["status"] in wanted]

    async def get_for_user(self, subscription_id, user_id):
        for row in self.subscriptions:
            if row["id"] == subscription_id and row["user_id"] == user_id:
                return dict(row)
        return None

    async def get_by_stripe_id(self, stripe_subscription_id):
        for row in reversed(self.subscriptions):
            if row["stripe_subscription_id"] == stripe_subscription_id:
                return dict(row)
        return None

    async def insert_subscription(self, *, subscription_id, user_id, service_id, status, **fields):
        if status in {"active", "trial"}:
            self._check_live_unique(user_id, service_id)
        now = datetime.now(timezone.utc)
        row = {
            "id": subscription_id,
            "user_id": user_id,
            "service_id": service_id,
            "status": status,
            "stripe_subscription_id": fields.get("stripe_subscription_id"),
            "price": fields.get("price", 0),
            "start_date": fields.get("start_date"),
            "end_date": fields.get("end_date"),
            "renewal_date": fields.get("renewal_date"),
            "metadata": fields.get("metadata") or {},
            "created_at": now,
            "updated_at": now,
        }
        self.subscriptions.append(row)
        return dict(row)

    async def update_status(
        self, subscription_id, status, *, start_date=None, end_date=None, renewal_date=None
    ):
        for row in self.subscriptions:
            if row["id"] != subscription_id:
                continue
            if status in {"active", "trial"}:
                self._check_live_unique(row["user_id"], row["service_id"], exclude=row["id"])
            row["status"] = status
            row["start_date"] = start_date or row["start_date"]
            row["end_date"] = end_date or row["end_date"]
            row["renewal_date"] = renewal_date or row["renewal_date"]
            row["updated_at"] = datetime.now(timezone.utc)
            return dict(row)
        return None

    async def record_cancellation(self, subscription_id, status, *, end_date, metadata):
        for row in self.subscriptions:
            if row["id"] != subscription_id:
                continue
            row["status"] = status
            row["end_date"] = end_date or row["end_date"]
            row["metadata"] = {**row["metadata"], **metadata}
            row["updated_at"] = datetime.now(timezone.utc)
            return dict(row)
        return None

    async def record_event(self, event_id, event_type, payload):
        if event_id in self.events:
            return False
        self.events[event_id] = {"type": event_type, "payload": payload}
        return True

    async def forget_event(self, event_id):
        self.events.pop(event_id, None)


def _missing(kind: str, object_id: str) -> stripe.InvalidRequestError:
    return stripe.InvalidRequestError(
        f"No such {kind}: '{object_id}'", "id", code="resource_missing", http_status=404
    )


class FakeStripe:
    """Records Stripe SDK calls and answers with plain dict payloads."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple, dict]] = []
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.intents: dict[str, dict[str, Any]] = {}
        self.invoices: dict[str, dict[str, Any]] = {}
        self.coupons: dict[str, dict[str, Any]] = {}
        self.promotion_codes: list[dict[str, Any]] = []
        self.next_status = "active"
        self.next_intent_status: str | None = None
        self.confirm_status = "succeeded"
        self.pay_result: str | None = "succeeded"
        self.errors: dict[str, Exception] = {}
        self._counter = 0

    def _record(self, call: str, /, *args, **kwargs) -> None:
        self.calls.append((call, args, kwargs))
        error = self.errors.get(call)
        if error is not None:
            raise error

    def called(self, name: str) -> list[tuple[tuple, dict]]:
        return [(args, kwargs) for call, args, kwargs in self.calls if call == name]

    def _new_intent(self, status: str) -> dict[str, Any]:
        intent_id = f"pi_test_{self._counter}"
        intent = {
            "id": intent_id,
            "object": "payment_intent",
            "status": status,
            "client_secret": f"{intent_id}_secret_abc",
            "amount": 4900,
            "currency": "usd",
            "created": PERIOD_START + self._counter,
            "customer": "cus_test",
            "next_action": {"type": "use_stripe_sdk"} if status == "requires_action" else None,
        }
        self.intents[intent_id] = intent
        return intent

    def _subscription_payload(self, subscription_id: str) -> dict[str, Any]:
        sub = copy.deepcopy(self.subscriptions[subscription_id])
        invoice = copy.deepcopy(self.invoices.get(sub.get("latest_invoice")))
        if invoice and invoice.get("payment_intent"):
            invoice["payment_intent"] = copy.deepcopy(self.intents[invoice["payment_intent"]])
        sub["latest_invoice"] = invoice
        return sub

    def complete_payment(self, subscription_id: str) -> None:
        """Simulate the customer finishing 3-D Secure in the browser."""
        sub = self.subscriptions[subscription_id]
        invoice = self.invoices[sub["latest_invoice"]]
        if invoice.get("payment_intent"):
            self.intents[invoice["payment_intent"]]["status"] = "succeeded"
        invoice["paid"] = True
        invoice["status"] = "paid"
        sub["status"] = "active"

    # stripe.PaymentMethod / stripe.Customer

    def attach_payment_method(self, payment_method_id, **kwargs):
        self._record("PaymentMethod.attach", payment_method_id, **kwargs)
        return {"id": payment_method_id, "customer": kwargs.get("customer")}

    def modify_customer(self, customer_id, **kwargs):
        name = "Customer.modify.default" if "invoice_settings" in kwargs else "Customer.modify"
        self._record(name, customer_id, **kwargs)
        return {"id": customer_id, **kwargs}

    # stripe.Subscription

    def create_subscription(self, **params):
        self._record("Subscription.create", **params)
        self._counter += 1
        subscription_id = f"sub_test_{self._counter}"
        status = self.next_status
        invoice_id = f"in_test_{self._counter}"
        intent_id = None
        if status == "incomplete" and self.next_intent_status:
            intent_id = self._new_intent(self.next_intent_status)["id"]
        self.invoices[invoice_id] = {
            "id": invoice_id,
            "status": "paid" if status == "active" else "open",
            "paid": status == "active",
            "amount_due": 4900,
            "currency": "usd",
            "created": PERIOD_START + self._counter,
            "subscription": subscription_id,
            "customer": params.get("customer"),
            "payment_intent": intent_id,
        }
        price_id = params["items"][0]["price"]
        self.subscriptions[subscription_id] = {
            "id": subscription_id,
            "object": "subscription",
            "status": status,
            "customer": params.get("customer"),
            "created": PERIOD_START + self._counter,
            "cancel_at": None,
            "cancel_at_period_end": False,
            "current_period_start": PERIOD_START,
            "current_period_end": PERIOD_END,
            "items": {
                "data": [
                    {"id": "si_test", "price": {"id": price_id, "unit_amount": 4900, "currency": "usd"}}
                ]
            },
            "latest_invoice": invoice_id,
            "pending_setup_intent": None,
            "metadata": params.get("metadata", {}),
        }
        return self._subscription_payload(subscription_id)

    def retrieve_subscription(self, subscription_id, **kwargs):
        self._record("Subscription.retrieve", subscription_id, **kwargs)
        if subscription_id not in self.subscriptions:
            raise _missing("subscription", subscription_id)
        return self._subscription_payload(subscription_id)

    def cancel_subscription(self, subscription_id, **kwargs):
        self._record("Subscription.cancel", subscription_id, **kwargs)
        if subscription_id not in self.subscriptions:
            raise _missing("subscription", subscription_id)
        self.subscriptions[subscription_id]["status"] = "canceled"
        return self._subscription_payload(subscription_id)

    def modify_subscription(self, subscription_id, **kwargs):
        self._record("Subscription.modify", subscription_id, **kwargs)
        if subscription_id not in self.subscriptions:
            raise _missing("subscription", subscription_id)
        sub = self.subscriptions[subscription_id]
        at_period_end = bool(kwargs.get("cancel_at_period_end"))
        sub["cancel_at_period_end"] = at_period_end
        sub["cancel_at"] = sub.get("current_period_end") if at_period_end else None
        sub["metadata"] = {**sub.get("metadata", {}), **kwargs.get("metadata", {})}
        return self._subscription_payload(subscription_id)

    def list_subscriptions(self, **kwargs):
        self._record("Subscription.list", **kwargs)
        data = [
            self._subscription_payload(sub_id)
            for sub_id, sub in self.subscriptions.items()
            if sub.get("customer") == kwargs.get("customer")
            and sub.get("status") == kwargs.get("status", sub.get("status"))
        ]
        return {"object": "list", "data": data}

    # stripe.PaymentIntent

    def retrieve_intent(self, intent_id, **kwargs):
        self._record("PaymentIntent.retrieve", intent_id, **kwargs)
        return copy.deepcopy(self.intents[intent_id])

    def modify_intent(self, intent_id, **kwargs):
        self._record("PaymentIntent.modify", intent_id, **kwargs)
        return copy.deepcopy(self.intents[intent_id])

    def confirm_intent(self, intent_id, **kwargs):
        self._record("PaymentIntent.confirm", intent_id, **kwargs)
        intent = self.intents[intent_id]
        intent["status"] = self.confirm_status
        if self.confirm_status == "succeeded":
            for sub_id, sub in self.subscriptions.items():
                if self.invoices.get(sub.get("latest_invoice"), {}).get("payment_intent") == intent_id:
                    self.complete_payment(sub_id)
        return copy.deepcopy(intent)

    def list_intents(self, **kwargs):
        self._record("PaymentIntent.list", **kwargs)
        return {"object": "list", "data": [copy.deepcopy(i) for i in self.intents.values()]}

    # stripe.Invoice

    def pay_invoice(self, invoice_id, **kwargs):
        self._record("Invoice.pay", invoice_id, **kwargs)
        invoice = self.invoices[invoice_id]
        if self.pay_result == "requires_action":
            self._counter += 1
            invoice["payment_intent"] = self._new_intent("requires_action")["id"]
            raise stripe.CardError(
                "This payment requires additional user action before it can be completed.",
                None,
                code="invoice_payment_intent_requires_action",
            )
        if self.pay_result == "succeeded":
            self._counter += 1
            invoice["payment_intent"] = self._new_intent("succeeded")["id"]
            sub_id = invoice["subscription"]
            self.complete_payment(sub_id)
        payload = copy.deepcopy(invoice)
        if payload.get("payment_intent"):
            payload["payment_intent"] = copy.deepcopy(self.intents[payload["payment_intent"]])
        return payload

    def list_invoices(self, **kwargs):
        self._record("Invoice.list", **kwargs)
        data = []
        for invoice in self.invoices.values():
            if invoice.get("customer") != kwargs.get("customer"):
                continue
            if invoice.get("status") != kwargs.get("status", invoice.get("status")):
                continue
            payload = copy.deepcopy(invoice)
            if payload.get("payment_intent"):
                payload["payment_intent"] = copy.deepcopy(self.intents[payload["payment_intent"]])
            data.append(payload)
        return {"object": "list", "data": data}

    def retrieve_invoice(self, invoice_id, **kwargs):
        self._record("Invoice.retrieve", invoice_id, **kwargs)
        payload = copy.deepcopy(self.invoices[invoice_id])
        if payload.get("payment_intent"):
            payload["payment_intent"] = copy.deepcopy(self.intents[payload["payment_intent"]])
        return payload

    # stripe.Coupon / stripe.PromotionCode

    def retrieve_coupon(self, coupon_id, **kwargs):
        self._record("Coupon.retrieve", coupon_id, **kwargs)
        if coupon_id not in self.coupons:
            raise _missing("coupon", coupon_id)
        return copy.deepcopy(self.coupons[coupon_id])

    def list_promotion_codes(self, **kwargs):
        self._record("PromotionCode.list", **kwargs)
        code = kwargs.get("code")
        matches = [p for p in self.promotion_codes if p["code"] == code and p.get("active", True)]
        return {"object": "list", "data": copy.deepcopy(matches[: kwargs.get("limit", 10)])}

    def install(self, monkeypatch) -> "FakeStripe":
        monkeypatch.setattr("stripe.PaymentMethod.attach", self.attach_payment_method)
        monkeypatch.setattr("stripe.Customer.modify", self.modify_customer)
        monkeypatch.setattr("stripe.Subscription.create", self.create_subscription)
        monkeypatch.setattr("stripe.Subscription.retrieve", self.retrieve_subscription)
        monkeypatch.setattr("stripe.Subscription.cancel", self.cancel_subscription)
        monkeypatch.setattr("stripe.Subscription.modify", self.modify_subscription)
        monkeypatch.setattr("stripe.Subscription.list", self.list_subscriptions)
        monkeypatch.setattr("stripe.PaymentIntent.retrieve", self.retrieve_intent)
        monkeypatch.setattr("stripe.PaymentIntent.modify", self.modify_intent)
        monkeypatch.setattr("stripe.PaymentIntent.confirm", self.confirm_intent)
        monkeypatch.setattr("stripe.PaymentIntent.list", self.list_intents)
        monkeypatch.setattr("stripe.Invoice.pay", self.pay_invoice)
        monkeypatch.setattr("stripe.Invoice.retrieve", self.retrieve_invoice)
        monkeypatch.setattr("stripe.Invoice.list", self.list_invoices)
        monkeypatch.setattr("stripe.Coupon.retrieve", self.retrieve_coupon)
        monkeypatch.setattr("stripe.PromotionCode.list", self.list_promotion_codes)
        return self
