"""Client side payment confirmation for subscriptions that need 3-D Secure.

The checkout hands over the client secrets returned by the backend; each one
is confirmed against Stripe in turn, after which the backend is asked for the
authoritative subscription status.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol

import httpx

from ..schemas import stripe_objects as so
from ..schemas.subscriptions import IncompletePayment, PaymentStatusResponse, SubscriptionStatus
from .api import DashboardApiClient

logger = logging.getLogger(__name__)

STRIPE_API_BASE = "https://api.stripe.com"

ChallengeCallback = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass
class PendingConfirmation:
    subscription_id: str
    client_secret: str
    service_name: str = ""


def pending_from_incomplete(payments: Iterable[IncompletePayment]) -> list[PendingConfirmation]:
    """Subscriptions whose payment only waits on authentication, ready for ``confirm_all``."""
    return [
        PendingConfirmation(subscription_id=p.subscription_id, client_secret=p.client_secret)
        for p in payments
        if p.payment_intent_status == "requires_action" and p.subscription_id and p.client_secret
    ]


@dataclass
class ConfirmationOutcome:
    intent_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class PaymentConfirmer(Protocol):
    async def confirm_card_payment(self, client_secret: str) -> ConfirmationOutcome: ...


class PaymentConfirmationError(RuntimeError):
    """Carries the processor's message for the subscription whose confirmation failed."""

    def __init__(self, message: str, *, subscription_id: str, service_name: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.subscription_id = subscription_id
        self.service_name = service_name


def _intent_path(client_secret: str) -> tuple[str, str]:
    intent_id = client_secret.split("_secret_", 1)[0]
    if intent_id.startswith("seti_"):
        return intent_id, f"/v1/setup_intents/{intent_id}"
    return intent_id, f"/v1/payment_intents/{intent_id}"


class StripeJsConfirmer:
    """Confirms intents over Stripe's publishable-key API, the way Stripe.js does in a browser."""

    def __init__(
        self,
        publishable_key: str,
        *,
        challenge: Optional[ChallengeCallback] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        base_url: str = STRIPE_API_BASE,
        timeout: float = 20.0,
    ) -> None:
        self._publishable_key = publishable_key
        self._challenge = challenge
        self._transport = transport
        self._base_url = base_url
        self._timeout = timeout

    async def confirm_card_payment(self, client_secret: str) -> ConfirmationOutcome:
        intent_id, path = _intent_path(client_secret)
        async with httpx.AsyncClient(
            base_url=self._base_url,
            transport=self._transport,
            timeout=self._timeout,
            auth=(self._publishable_key, ""),
        ) as client:
            try:
                intent = await self._call(client, "GET", path, client_secret)
                if intent.status == "requires_confirmation":
                    intent = await self._call(client, "POST", f"{path}/confirm", client_secret)
                if intent.status == "requires_action":
                    if self._challenge is None:
                        return ConfirmationOutcome(
                            intent_id=intent_id,
                            status=intent.status,
                            error="This payment requires authentication.",
                        )
                    await self._challenge(intent.next_action or {})
                    intent = await self._call(client, "GET", path, client_secret)
            except _StripeRequestError as exc:
                return ConfirmationOutcome(intent_id=intent_id, error=exc.message)
            except httpx.HTTPError as exc:
                logger.warning("Stripe confirmation request failed: %s", exc)
                return ConfirmationOutcome(
                    intent_id=intent_id, error="Could not reach the payment processor."
                )

        if intent.status in {"succeeded", "processing"}:
            return ConfirmationOutcome(intent_id=intent.id, status=intent.status)
        message = (
            intent.last_payment_error.message
            if intent.last_payment_error and intent.last_payment_error.message
            else "We are unable to authenticate your payment method."
        )
        return ConfirmationOutcome(intent_id=intent.id, status=intent.status, error=message)

    async def _call(
        self, client: httpx.AsyncClient, method: str, path: str, client_secret: str
    ) -> so.PaymentIntent:
        if method == "GET":
            response = await client.get(path, params={"client_secret": client_secret})
        else:
            response = await client.post(path, data={"client_secret": client_secret})
        try:
            payload = response.json()
        except ValueError as exc:
            logger.warning(
                "Stripe returned a non-JSON body with status %s", response.status_code
            )
            raise _StripeRequestError(f"Stripe returned {response.status_code}") from exc
        if response.status_code >= 400:
            error = payload.get("error") if isinstance(payload, dict) else None
            message = (error or {}).get("message") or f"Stripe returned {response.status_code}"
            raise _StripeRequestError(message)
        return so.PaymentIntent.model_validate(payload)


class _StripeRequestError(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


@dataclass
class PaymentConfirmationHandler:
    api: DashboardApiClient
    confirmer: PaymentConfirmer
    statuses: dict[str, SubscriptionStatus] = field(default_factory=dict)

    async def confirm_all(
        self, pending: list[PendingConfirmation]
    ) -> list[PaymentStatusResponse]:
        """Confirm each payment in order, then ask the backend what really happened.

        The first failed confirmation stops the run; confirmations that already
        went through stay optimistic in ``statuses`` until verified.
        """
        for entry in pending:
            outcome = await self.confirmer.confirm_card_payment(entry.client_secret)
            if not outcome.ok:
                logger.info(
                    "Payment confirmation failed for %s: %s", entry.subscription_id, outcome.error
                )
                raise PaymentConfirmationError(
                    outcome.error or "Payment confirmation failed",
                    subscription_id=entry.subscription_id,
                    service_name=entry.service_name,
                )
            self.statuses[entry.subscription_id] = SubscriptionStatus.active

        verified: list[PaymentStatusResponse] = []
        for entry in pending:
            result = await self.api.check_payment_status(entry.subscription_id)
            self.statuses[entry.subscription_id] = result.local_status
            verified.append(result)
        return verified


__all__ = [
    "ConfirmationOutcome",
    "PaymentConfirmationError",
    "PaymentConfirmationHandler",
    "PaymentConfirmer",
    "PendingConfirmation",
    "StripeJsConfirmer",
    "pending_from_incomplete",
]
