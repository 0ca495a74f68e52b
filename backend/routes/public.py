"""
Public catalog routes - no authentication.

GET /api/plans - Active plans with price, limits and features
GET /api/payment-methods - Active payment methods, ordered for display
"""
from fastapi import APIRouter
import logging

from services.plan_catalog import plan_catalog
from services.payment_service import payment_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["public"])


@router.get("/plans")
async def list_plans():
    plans = await plan_catalog.list_plans()
    return {"plans": [p.to_public() for p in plans]}


@router.get("/payment-methods")
async def list_payment_methods():
    methods = await payment_service.list_methods()
    return {"payment_methods": [m.model_dump() for m in methods]}
