from __future__ import annotations

import logging
import re
from typing import Any, Mapping

import stripe

from .. import metrics
from ..schemas.billing import BillingDetails, ParsedAddress
from . import stripe_gateway

logger = logging.getLogger(__name__)

_POSTAL_CODE = re.compile(r"\b\d{6}\b")


def parse_address(address: str) -> ParsedAddress:
    """Parse a comma separated "street, [building,] city, county, postal code" address."""
    if not address or not address.strip():
        raise ValueError("Address string is required")

    parts = [part.strip() for part in address.split(",") if part.strip()]
    if len(parts) < 2:
        raise ValueError("Address must contain at least street and city")

    if len(parts) >= 3:
        city = parts[-3]
    else:
        city = parts[1]
    postal_match = _POSTAL_CODE.search(parts[-1])

    line2 = None
    if len(parts) > 3:
        line2 = ", ".join(parts[1:-2]) or None

    state = None
    if len(parts) >= 3 and not _is_postal_code(parts[-2]):
        state = parts[-2]

    return ParsedAddress(
        line1=parts[0],
        line2=line2,
        city=city,
        state=state,
        postal_code=postal_match.group(0) if postal_match else "",
    )


def _is_postal_code(value: str) -> bool:
    return bool(re.fullmatch(r"\d{6}", value.strip()))


def to_customer_fields(details: BillingDetails) -> dict[str, Any]:
    fields: dict[str, Any] = {}

    name = details.billing_company or details.billing_name
    if name:
        fields["name"] = name

    if details.billing_address:
        try:
            fields["address"] = parse_address(details.billing_address).model_dump(exclude_none=True)
        except ValueError as exc:
            logger.warning("Billing address could not be parsed for Stripe: %s", exc)

    if details.billing_phone:
        fields["phone"] = details.billing_phone

    if details.billing_vat:
        fields["tax_exempt"] = "none"

    return fields


async def sync_customer_billing(
    customer_id: str, profile: Mapping[str, Any], *, user_id: str
) -> bool:
    """Push stored billing details to the Stripe customer.

    Never raises: a failed push is reported as a structured warning plus the
    ``billing_sync_failures_total`` counter and the caller carries on.
    """
    fields = to_customer_fields(BillingDetails.from_record(profile))
    if not fields:
        logger.info("No billing details to push to Stripe", extra={"user": user_id})
        return False

    try:
        await stripe_gateway.update_customer(customer_id, fields)
    except stripe.StripeError as exc:
        metrics.billing_sync_failures_total.inc()
        logger.warning(
            "Billing sync to Stripe failed; continuing without it",
            extra={
                "event": "billing_sync_failed",
                "user": user_id,
                "customer_id": customer_id,
                "error_type": type(exc).__name__,
                "stripe_code": getattr(exc, "code", None),
            },
        )
        return False

    logger.info(
        "Billing details pushed to Stripe",
        extra={"user": user_id, "customer_id": customer_id, "fields": sorted(fields)},
    )
    return True


__all__ = ["parse_address", "sync_customer_billing", "to_customer_fields"]
