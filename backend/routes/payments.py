"""
Subscriber payment routes.

POST /api/payments - Start a payment (card checkout or manual instructions)
GET /api/payments - Payment history
GET /api/payments/{transaction_id} - Current status (lazy expiry applied)
POST /api/payments/{transaction_id}/checkout - Retry hosted checkout after a gateway failure
POST /api/payments/{transaction_id}/proof - Attach proof of payment (manual methods)
"""
from fastapi import APIRouter, Request, status
import logging

from middleware import subscriber_route_guard
from models import CreatePaymentRequest, PaymentProofRequest
from services.payment_service import payment_service, public_transaction

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_payment(body: CreatePaymentRequest, request: Request):
    user = await subscriber_route_guard(request)
    return await payment_service.create_payment(
        subscriber_id=user["subscriber_id"],
        plan_type=body.plan_type,
        method_name=body.payment_method,
        coupon_code=body.coupon_code,
    )


@router.get("")
async def payment_history(request: Request, limit: int = 50):
    user = await subscriber_route_guard(request)
    transactions = await payment_service.list_for_subscriber(user["subscriber_id"], limit=min(limit, 200))
    return {"payments": [public_transaction(t) for t in transactions]}


@router.get("/{transaction_id}")
async def get_payment(transaction_id: int, request: Request):
    user = await subscriber_route_guard(request)
    transaction = await payment_service.get_transaction(transaction_id, user["subscriber_id"])
    return public_transaction(transaction)


@router.post("/{transaction_id}/checkout")
async def retry_checkout(transaction_id: int, request: Request):
    user = await subscriber_route_guard(request)
    return await payment_service.retry_checkout(transaction_id, user["subscriber_id"])


@router.post("/{transaction_id}/proof")
async def submit_proof(transaction_id: int, body: PaymentProofRequest, request: Request):
    user = await subscriber_route_guard(request)
    return await payment_service.submit_proof(transaction_id, user["subscriber_id"], body)
