"""Async HTTP client for the subscription API, used by the checkout flow."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..schemas.subscriptions import (
    CancelPendingPaymentResponse,
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
    CouponValidationResult,
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    IncompletePayment,
    PaymentStatusResponse,
    RetryPaymentRequest,
    SubscriptionRecord,
)

logger = logging.getLogger(__name__)


class DashboardApiError(RuntimeError):
    """Raised when the backend answers with a non-2xx status or cannot be reached."""

    def __init__(
        self,
        status_code: int,
        message: str,
        *,
        code: Optional[str] = None,
        retryable: bool = False,
        payload: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code
        self.retryable = retryable
        self.payload = payload or {}


class DashboardApiClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 15.0,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            transport=transport,
            timeout=timeout,
        )

    async def __aenter__(self) -> "DashboardApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def create_subscription(
        self,
        service_id: int,
        payment_method_id: Optional[str],
        coupon: Optional[str] = None,
        promotion_code_id: Optional[str] = None,
    ) -> CreateSubscriptionResponse:
        body = CreateSubscriptionRequest(
            service_id=service_id,
            payment_method_id=payment_method_id,
            coupon=coupon,
            promotion_code_id=promotion_code_id,
        )
        data = await self._request(
            "POST",
            "/api/subscriptions/create-stripe-subscription",
            json=body.model_dump(by_alias=True, exclude_none=True),
        )
        return CreateSubscriptionResponse.model_validate(data)

    async def retry_payment(
        self, subscription_id: str, payment_method_id: str
    ) -> CreateSubscriptionResponse:
        body = RetryPaymentRequest(
            subscription_id=subscription_id, payment_method_id=payment_method_id
        )
        data = await self._request(
            "POST",
            "/api/subscriptions/retry-payment",
            json=body.model_dump(by_alias=True),
        )
        return CreateSubscriptionResponse.model_validate(data)

    async def check_payment_status(self, subscription_id: str) -> PaymentStatusResponse:
        data = await self._request(
            "POST",
            "/api/subscriptions/check-payment-status",
            json={"subscriptionId": subscription_id},
        )
        return PaymentStatusResponse.model_validate(data)

    async def validate_coupon(self, coupon_code: str) -> CouponValidationResult:
        data = await self._request(
            "POST", "/api/validate-coupon", json={"couponCode": coupon_code}
        )
        return CouponValidationResult.model_validate(data)

    async def list_subscriptions(self) -> list[SubscriptionRecord]:
        data = await self._request("GET", "/api/subscriptions")
        return [SubscriptionRecord.model_validate(row) for row in data.get("subscriptions", [])]

    async def pending_payments(self) -> list[SubscriptionRecord]:
        data = await self._request("GET", "/api/subscriptions/pending-payments")
        return [
            SubscriptionRecord.model_validate(row)
            for row in data.get("pendingSubscriptions", [])
        ]

    async def cancel_pending_payment(self, subscription_id: str) -> CancelPendingPaymentResponse:
        data = await self._request(
            "POST",
            "/api/subscriptions/cancel-pending-payment",
            json={"subscriptionId": subscription_id},
        )
        return CancelPendingPaymentResponse.model_validate(data)

    async def cancel_subscription(
        self, subscription_id: str, *, immediate: bool = False, reason: Optional[str] = None
    ) -> CancelSubscriptionResponse:
        body = CancelSubscriptionRequest(
            subscription_id=subscription_id, immediate=immediate, reason=reason
        )
        data = await self._request(
            "POST",
            "/api/subscriptions/cancel-stripe-subscription",
            json=body.model_dump(by_alias=True, exclude_none=True),
        )
        return CancelSubscriptionResponse.model_validate(data)

    async def incomplete_payments(self) -> list[IncompletePayment]:
        data = await self._request("GET", "/api/subscriptions/check-incomplete-payments")
        return [
            IncompletePayment.model_validate(row)
            for row in data.get("incompletePayments", [])
        ]

    async def _request(
        self, method: str, path: str, *, json: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.HTTPError as exc:
            logger.warning("Request %s %s failed: %s", method, path, exc)
            raise DashboardApiError(
                0, "Could not reach the server", code="network_error", retryable=True
            ) from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if response.status_code >= 400:
            message = payload.get("error") or payload.get("detail") or response.reason_phrase
            logger.warning(
                "API %s %s failed: status=%s code=%s",
                method,
                path,
                response.status_code,
                payload.get("code"),
            )
            raise DashboardApiError(
                response.status_code,
                str(message),
                code=payload.get("code"),
                retryable=bool(payload.get("retryable", response.status_code in (429, 502, 503))),
                payload=payload,
            )
        return payload


__all__ = ["DashboardApiClient", "DashboardApiError"]
