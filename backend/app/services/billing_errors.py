"""Error taxonomy for the subscription flow.

Every failure the API reports carries an HTTP status, a stable machine code and
a ``retryable`` flag so the checkout client can decide between offering a retry
and showing a hard failure.
"""

from __future__ import annotations

import logging

import stripe

from .. import metrics

logger = logging.getLogger(__name__)


class SubscriptionError(Exception):
    status_code = 400
    code = "subscription_error"
    retryable = False

    def __init__(
        self,
        detail: str,
        status_code: int | None = None,
        *,
        code: str | None = None,
        retryable: bool | None = None,
        extra: dict | None = None,
    ) -> None:
        super().__init__(detail)
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        self.detail = detail
        self.extra = extra or {}

    def to_payload(self) -> dict:
        payload = {"error": self.detail, "code": self.code, "retryable": self.retryable}
        payload.update(self.extra)
        return payload


class SubscriptionValidationError(SubscriptionError):
    code = "invalid_request"


class DuplicateSubscriptionError(SubscriptionError):
    code = "duplicate_subscription"


class DuplicateRequestError(SubscriptionError):
    status_code = 429
    code = "request_in_progress"
    retryable = True


class SubscriptionNotFoundError(SubscriptionError):
    status_code = 404
    code = "not_found"


class SubscriptionConfigError(SubscriptionError):
    status_code = 503
    code = "billing_unavailable"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)


class ProcessorError(SubscriptionError):
    code = "processor_error"


def classify_stripe_error(exc: stripe.StripeError, *, action: str) -> ProcessorError:
    """Map a Stripe SDK exception to a retryable or terminal ProcessorError."""
    stripe_code = getattr(exc, "code", None)
    message = getattr(exc, "user_message", None) or str(exc) or f"Failed to {action}"

    if isinstance(exc, stripe.CardError):
        error = ProcessorError(message, 402, code=stripe_code or "card_declined", retryable=False)
    elif isinstance(exc, stripe.RateLimitError):
        error = ProcessorError(
            "Payment processor is busy, please try again shortly",
            503,
            code="rate_limited",
            retryable=True,
        )
    elif isinstance(exc, stripe.APIConnectionError):
        error = ProcessorError(
            "Could not reach the payment processor, please try again",
            503,
            code="processor_unreachable",
            retryable=True,
        )
    elif isinstance(exc, stripe.AuthenticationError):
        error = ProcessorError(
            "Payment processor is not configured", 503, code="billing_unavailable", retryable=False
        )
    elif isinstance(exc, stripe.InvalidRequestError):
        error = ProcessorError(message, 400, code=stripe_code or "invalid_request", retryable=False)
    elif isinstance(exc, stripe.APIError):
        error = ProcessorError(
            "Payment processor error, please try again", 502, code="processor_error", retryable=True
        )
    else:
        error = ProcessorError(message, 502, code=stripe_code or "processor_error", retryable=False)

    metrics.stripe_errors_total.labels(
        action=action, retryable=str(error.retryable).lower()
    ).inc()
    logger.warning(
        "Stripe call failed",
        extra={
            "stripe_action": action,
            "stripe_code": stripe_code,
            "error_type": type(exc).__name__,
            "retryable": error.retryable,
        },
    )
    return error


__all__ = [
    "DuplicateRequestError",
    "DuplicateSubscriptionError",
    "ProcessorError",
    "SubscriptionConfigError",
    "SubscriptionError",
    "SubscriptionNotFoundError",
    "SubscriptionValidationError",
    "classify_stripe_error",
]
