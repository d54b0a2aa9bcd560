from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum

import stripe

from .config import settings


class StripeMode(str, Enum):
    test = "test"
    live = "live"


class StripeConfigurationError(RuntimeError):
    """Raised when Stripe env/config cannot be resolved safely."""


@dataclass
class StripeContext:
    secret_key: str
    secret_source: str
    mode: StripeMode


def _resolve_secret_key() -> tuple[str, str]:
    env_candidates = [
        ((os.environ.get("STRIPE_SECRET_KEY") or "").strip(), "STRIPE_SECRET_KEY"),
        ((os.environ.get("STRIPE_TEST_SECRET_KEY") or "").strip(), "STRIPE_TEST_SECRET_KEY"),
        ((os.environ.get("STRIPE_LIVE_SECRET_KEY") or "").strip(), "STRIPE_LIVE_SECRET_KEY"),
    ]
    populated = [(value, name) for value, name in env_candidates if value]
    distinct_values = {value for value, _ in populated}
    if len(distinct_values) > 1:
        raise StripeConfigurationError(
            f"Conflicting Stripe secrets set: {', '.join(name for _, name in populated)}"
        )

    if populated:
        preferred = next((pair for pair in populated if pair[1] == "STRIPE_SECRET_KEY"), None)
        return preferred or populated[0]

    if settings.stripe_secret_key:
        return settings.stripe_secret_key, "STRIPE_SECRET_KEY"
    if settings.stripe_test_secret_key:
        return settings.stripe_test_secret_key, "STRIPE_TEST_SECRET_KEY"
    if settings.stripe_live_secret_key:
        return settings.stripe_live_secret_key, "STRIPE_LIVE_SECRET_KEY"

    raise StripeConfigurationError("Stripe secret key is missing (set STRIPE_SECRET_KEY)")


def resolve_stripe_context() -> StripeContext:
    secret_key, secret_source = _resolve_secret_key()
    if secret_key.startswith(("sk_test_", "rk_test_")):
        mode = StripeMode.test
    elif secret_key.startswith(("sk_live_", "rk_live_")):
        mode = StripeMode.live
    else:
        raise StripeConfigurationError(f"{secret_source} must start with sk_test_ or sk_live_")
    return StripeContext(secret_key=secret_key, secret_source=secret_source, mode=mode)


def configure_stripe() -> StripeContext:
    """Point the global Stripe client at the resolved key and pinned API version."""
    context = resolve_stripe_context()
    stripe.api_key = context.secret_key
    if settings.stripe_api_version:
        stripe.api_version = settings.stripe_api_version
    return context


def resolve_service_price(service_id: int) -> str | None:
    price_id = settings.stripe_service_prices.get(service_id)
    if isinstance(price_id, str) and price_id.strip():
        return price_id.strip()
    return None


def resolve_webhook_secret() -> str:
    secret = settings.stripe_webhook_secret
    if not secret:
        raise StripeConfigurationError("STRIPE_WEBHOOK_SECRET missing")
    return secret


__all__ = [
    "StripeConfigurationError",
    "StripeContext",
    "StripeMode",
    "configure_stripe",
    "resolve_service_price",
    "resolve_stripe_context",
    "resolve_webhook_secret",
]
