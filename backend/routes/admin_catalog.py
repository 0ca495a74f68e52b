"""Admin catalog and subscriber lifecycle signals.

- GET /api/admin/plans, PATCH /api/admin/plans/{plan_type}
- GET /api/admin/payment-methods, PATCH /api/admin/payment-methods/{name}
- GET /api/admin/subscribers/{subscriber_id}
- POST /api/admin/subscribers/{subscriber_id}/past-due | /recover | /cancel
"""
from fastapi import APIRouter, Request

from middleware import admin_route_guard
from models import CancelRequest, PastDueRequest, PaymentMethodUpdate, PlanType, PlanUpdate, UserRole
from services.payment_service import payment_service
from services.plan_catalog import plan_catalog
from services.subscription_service import subscription_service
from utils.audit import get_audit_logs_for_subscriber

router = APIRouter(prefix="/api/admin", tags=["admin-catalog"])


def _actor(admin: dict) -> str:
    return admin.get("admin_id") or admin.get("sub")


@router.get("/plans")
async def list_plans(request: Request):
    await admin_route_guard(request)
    plans = await plan_catalog.list_plans(include_inactive=True)
    return {"plans": [{**p.to_public(), "is_active": p.is_active} for p in plans]}


@router.patch("/plans/{plan_type}")
async def update_plan(plan_type: PlanType, body: PlanUpdate, request: Request):
    admin = await admin_route_guard(request)
    plan = await plan_catalog.update_plan(plan_type, body.model_dump(exclude_unset=True), _actor(admin))
    return {**plan.to_public(), "is_active": plan.is_active}


@router.get("/payment-methods")
async def list_payment_methods(request: Request):
    await admin_route_guard(request)
    methods = await payment_service.list_methods(include_inactive=True)
    return {"payment_methods": [m.model_dump() for m in methods]}


@router.patch("/payment-methods/{name}")
async def update_payment_method(name: str, body: PaymentMethodUpdate, request: Request):
    admin = await admin_route_guard(request)
    method = await payment_service.update_method(name, body.model_dump(exclude_unset=True), _actor(admin))
    return method.model_dump()


@router.get("/subscribers/{subscriber_id}")
async def get_subscriber(subscriber_id: int, request: Request):
    await admin_route_guard(request)
    status = await subscription_service.get_status(subscriber_id)
    audit = await get_audit_logs_for_subscriber(subscriber_id, limit=20)
    return {**status, "recent_activity": audit}


@router.post("/subscribers/{subscriber_id}/past-due")
async def mark_past_due(subscriber_id: int, body: PastDueRequest, request: Request):
    admin = await admin_route_guard(request)
    await subscription_service.mark_past_due(
        subscriber_id, reason=body.reason, actor_id=_actor(admin), actor_role=UserRole.ROLE_ADMIN
    )
    return await subscription_service.get_status(subscriber_id)


@router.post("/subscribers/{subscriber_id}/recover")
async def recover(subscriber_id: int, request: Request):
    admin = await admin_route_guard(request)
    await subscription_service.recover(subscriber_id, actor_id=_actor(admin), actor_role=UserRole.ROLE_ADMIN)
    return await subscription_service.get_status(subscriber_id)


@router.post("/subscribers/{subscriber_id}/cancel")
async def cancel(subscriber_id: int, body: CancelRequest, request: Request):
    admin = await admin_route_guard(request)
    await subscription_service.cancel(
        subscriber_id, reason=body.reason or "canceled_by_admin", actor_id=_actor(admin), actor_role=UserRole.ROLE_ADMIN
    )
    return await subscription_service.get_status(subscriber_id)
