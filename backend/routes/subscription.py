"""
Subscriber-facing lifecycle routes.

GET /api/subscription - Status, plan, trial days left
POST /api/subscription/change-plan - Trial upgrade or downgrade (no payment)
POST /api/subscription/cancel - Cancel the subscription
"""
from fastapi import APIRouter, Request
import logging

from middleware import subscriber_route_guard
from models import CancelRequest, ChangePlanRequest, UserRole
from services.subscription_service import subscription_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/subscription", tags=["subscription"])


@router.get("")
async def get_subscription(request: Request):
    user = await subscriber_route_guard(request)
    return await subscription_service.get_status(user["subscriber_id"])


@router.post("/change-plan")
async def change_plan(body: ChangePlanRequest, request: Request):
    user = await subscriber_route_guard(request)
    subscriber_id = user["subscriber_id"]
    await subscription_service.change_plan(subscriber_id, body.plan_type, actor_id=str(subscriber_id))
    return await subscription_service.get_status(subscriber_id)


@router.post("/cancel")
async def cancel_subscription(body: CancelRequest, request: Request):
    user = await subscriber_route_guard(request)
    subscriber_id = user["subscriber_id"]
    await subscription_service.cancel(
        subscriber_id, reason=body.reason, actor_id=str(subscriber_id), actor_role=UserRole.ROLE_SUBSCRIBER
    )
    return await subscription_service.get_status(subscriber_id)
