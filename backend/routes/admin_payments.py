"""Admin Payment Reconciliation - RBAC owner/admin only.

Endpoints:
- GET /api/admin/payments/pending - Manual payments waiting on a decision (oldest first)
- GET /api/admin/payments/{transaction_id} - Any payment, with lazy expiry applied
- POST /api/admin/payments/{transaction_id}/review - Approve or reject proof of payment

Rules:
- Only payments under review can be decided.
- Rejection never changes the subscriber's subscription.
"""
from fastapi import APIRouter, Request
import logging

from middleware import admin_route_guard
from models import ReviewRequest
from services.payment_service import payment_service, public_transaction
from services.reconciliation_service import reconciliation_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin/payments", tags=["admin-payments"])


@router.get("/pending")
async def list_pending_payments(request: Request, limit: int = 100):
    await admin_route_guard(request)
    queue = await reconciliation_service.list_pending(limit=min(limit, 500))
    return {"payments": queue, "total": len(queue)}


@router.get("/{transaction_id}")
async def get_payment(transaction_id: int, request: Request):
    await admin_route_guard(request)
    return public_transaction(await payment_service.get_transaction(transaction_id))


@router.post("/{transaction_id}/review")
async def review_payment(transaction_id: int, body: ReviewRequest, request: Request):
    admin = await admin_route_guard(request)
    return await reconciliation_service.review(
        transaction_id,
        body.decision,
        reviewer_id=admin.get("admin_id") or admin.get("sub"),
        reason=body.reason,
    )
