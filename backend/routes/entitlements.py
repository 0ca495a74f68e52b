"""
Entitlement routes.

GET /api/entitlements/{subscriber_id} - Full snapshot (plan, status, usage, features)
GET /api/entitlements/{subscriber_id}/can-create/{resource} - Boolean check

Responses may be cached by the client for up to 5 minutes; drop the cache
when entitlement_version changes.
"""
from fastapi import APIRouter, Request, Response

from middleware import subscriber_or_admin_guard
from models import Resource
from services.entitlement_service import entitlement_service

router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])

CACHE_CONTROL = "private, max-age=300"


@router.get("/{subscriber_id}")
async def get_entitlements(subscriber_id: int, request: Request, response: Response):
    await subscriber_or_admin_guard(request, subscriber_id)
    snapshot = await entitlement_service.evaluate(subscriber_id)
    response.headers["Cache-Control"] = CACHE_CONTROL
    response.headers["X-Entitlement-Version"] = str(snapshot.entitlement_version)
    return snapshot.to_dict()


@router.get("/{subscriber_id}/can-create/{resource}")
async def can_create(subscriber_id: int, resource: Resource, request: Request):
    await subscriber_or_admin_guard(request, subscriber_id)
    snapshot = await entitlement_service.evaluate(subscriber_id)
    usage = snapshot.limits_view()[resource.value]
    return {
        "resource": resource.value,
        "can_create": snapshot.can_create(resource),
        "current": usage["current"],
        "limit": usage["limit"],
        "entitlement_version": snapshot.entitlement_version,
    }
