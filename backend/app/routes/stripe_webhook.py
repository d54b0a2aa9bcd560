from __future__ import annotations

from fastapi import APIRouter, Request, status

from ..schemas.subscriptions import WebhookAck
from ..services import subscription_webhooks

router = APIRouter(prefix="/api", tags=["stripe-webhooks"])


@router.post("/webhook", response_model=WebhookAck, status_code=status.HTTP_200_OK)
async def stripe_subscription_webhook(request: Request) -> WebhookAck:
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    return await subscription_webhooks.handle_webhook(payload, signature)
