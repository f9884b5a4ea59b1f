"""
Payment webhook endpoint
========================

POST /api/v1/webhooks/stripe -- signed payment-provider events

Status codes tell the provider whether to redeliver:

* 400 -- bad signature or malformed body (never retried usefully)
* 500 -- secret missing or processing failed (provider retries)
* 200 -- applied, duplicate, ignored, or booking not resolvable
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from src.api.dependencies import get_reconciler
from src.api.schemas import ErrorResponse, WebhookAck
from src.services.payments import (
    PaymentWebhookReconciler,
    WebhookNotConfigured,
    WebhookProcessingError,
    WebhookSignatureError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/stripe",
    response_model=WebhookAck,
    summary="Receive a signed payment-provider event",
    responses={
        400: {"model": ErrorResponse, "description": "Signature or payload rejected"},
        500: {"model": ErrorResponse, "description": "Event not processed; retry"},
    },
)
async def stripe_webhook(
    request: Request,
    reconciler: PaymentWebhookReconciler = Depends(get_reconciler),
):
    # Signature covers the exact bytes, so read the raw body
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        result = await reconciler.handle(payload, signature)
    except WebhookSignatureError as exc:
        logger.warning("Rejected webhook: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc))
    except WebhookNotConfigured as exc:
        logger.error("Webhook received but %s", exc)
        raise HTTPException(status_code=500, detail="Webhook secret not configured")
    except WebhookProcessingError as exc:
        raise HTTPException(status_code=500, detail=str(exc))

    return WebhookAck(duplicate=result.duplicate, outcome=result.outcome.value)
