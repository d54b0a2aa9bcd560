from __future__ import annotations

import logging
import re

import stripe

from ..schemas.subscriptions import CouponValidationResult
from . import stripe_gateway
from .billing_errors import SubscriptionValidationError, classify_stripe_error

logger = logging.getLogger(__name__)

_COUPON_PATTERN = re.compile(r"^[A-Z0-9\-_]+$")
COUPON_MIN_LENGTH = 2
COUPON_MAX_LENGTH = 50


def normalize_coupon_code(code: str) -> str:
    return code.strip().upper()


def validate_coupon_format(code: str | None) -> str:
    """Return the normalized code or raise when it is not 2-50 chars of A-Z, 0-9, '-' or '_'."""
    if not code or not isinstance(code, str):
        raise SubscriptionValidationError(
            "Invalid coupon code format: Coupon code is required", code="invalid_coupon"
        )
    normalized = normalize_coupon_code(code)
    if len(normalized) < COUPON_MIN_LENGTH:
        reason = f"Coupon code must be at least {COUPON_MIN_LENGTH} characters long"
    elif len(normalized) > COUPON_MAX_LENGTH:
        reason = f"Coupon code must be no more than {COUPON_MAX_LENGTH} characters long"
    elif not _COUPON_PATTERN.match(normalized):
        reason = "Coupon code can only contain letters, numbers, hyphens, and underscores"
    else:
        return normalized
    raise SubscriptionValidationError(
        f"Invalid coupon code format: {reason}", code="invalid_coupon"
    )


async def validate_coupon(code: str) -> CouponValidationResult:
    """Resolve a customer-facing code to its discount.

    Active promotion codes win over raw coupon ids; an unknown code and an
    expired coupon are both reported as 400.
    """
    normalized = validate_coupon_format(code)
    stripe_gateway.ensure_configured()

    try:
        promotion = await stripe_gateway.find_promotion_code(normalized)
    except stripe.StripeError as exc:
        raise classify_stripe_error(exc, action="look up promotion code") from exc

    if promotion is not None:
        coupon = promotion.coupon
        promotion_code_id = promotion.id
    else:
        promotion_code_id = None
        try:
            coupon = await stripe_gateway.retrieve_coupon(normalized)
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "code", None) == "resource_missing":
                logger.info("Unknown coupon code submitted", extra={"coupon": normalized})
                raise SubscriptionValidationError(
                    "Invalid coupon code", code="invalid_coupon"
                ) from exc
            raise classify_stripe_error(exc, action="retrieve coupon") from exc
        except stripe.StripeError as exc:
            raise classify_stripe_error(exc, action="retrieve coupon") from exc

    if not coupon.valid:
        raise SubscriptionValidationError("Invalid or expired coupon", code="invalid_coupon")

    return CouponValidationResult(
        valid=True,
        percent_off=coupon.percent_off,
        amount_off=coupon.amount_off,
        currency=coupon.currency,
        duration=coupon.duration,
        duration_in_months=coupon.duration_in_months,
        name=coupon.name,
        promotion_code_id=promotion_code_id,
        metadata=coupon.metadata,
    )


__all__ = ["normalize_coupon_code", "validate_coupon", "validate_coupon_format"]
