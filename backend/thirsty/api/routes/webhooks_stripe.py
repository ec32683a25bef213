"""
Stripe webhook endpoint for subscription lifecycle events.

SECURITY: Every delivery is verified against STRIPE_WEBHOOK_SECRET before
the ledger is touched. The raw body is passed through untouched because
the signature covers the exact bytes.

Response codes:
- 200: applied, duplicate, or permanently rejected (do not redeliver)
- 400: bad signature or malformed payload
- 503: transient storage failure (Stripe retries)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from thirsty.services.billing_errors import TransientStorageError
from thirsty.services.subscription_sync import (
    SubscriptionSynchronizer,
    get_subscription_synchronizer,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    outcome: str
    message: str = "Webhook processed"


def get_synchronizer() -> SubscriptionSynchronizer:
    try:
        return get_subscription_synchronizer()
    except ValueError:
        logger.error("DATABASE_URL not configured - webhook cannot be applied")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured"
        )


@router.post("/stripe", response_model=WebhookResponse)
async def handle_stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    synchronizer: SubscriptionSynchronizer = Depends(get_synchronizer),
):
    """
    Handle a Stripe webhook delivery.

    SECURITY: Verifies the Stripe-Signature header before processing.
    """
    body = await request.body()

    try:
        result = await run_in_threadpool(synchronizer.handle, body, stripe_signature)
    except TransientStorageError as exc:
        logger.error("Webhook not consumed, provider will retry", extra={
            "error": str(exc),
        })
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Temporary failure processing webhook"
        )

    if result.http_status == status.HTTP_400_BAD_REQUEST:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=result.reason or "Invalid webhook"
        )

    return WebhookResponse(
        outcome=result.outcome.value,
        message=result.reason or "Webhook processed",
    )
