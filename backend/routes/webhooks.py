"""Webhook Routes - payment gateway (Stripe).

POST /api/webhook/gateway - Signed Stripe events (Stripe-Signature header)

Response codes:
- 200 for processed, ignored and duplicate events
- 400 for an invalid signature or payload (Stripe should not retry)
- 5xx for transient failures so Stripe redelivers
"""
from fastapi import APIRouter, HTTPException, Request, Header, status
import logging

from services.gateway_webhook_service import gateway_webhook_service

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


@router.post("/api/webhook/gateway")
async def gateway_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    payload = await request.body()
    accepted, message, details = await gateway_webhook_service.process_webhook(
        payload=payload,
        signature=stripe_signature,
    )
    if not accepted:
        logger.error(f"Webhook rejected: {message}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "WEBHOOK_REJECTED", "message": message}
        )
    return {"status": "received", "message": message, "details": details}
