"""Admin campaign management.

- GET /api/admin/campaigns
- POST /api/admin/campaigns
- GET /api/admin/campaigns/{campaign_id}
- PATCH /api/admin/campaigns/{campaign_id}
- POST /api/admin/campaigns/{campaign_id}/activate | /deactivate
- GET /api/admin/campaigns/{campaign_id}/statistics
"""
from fastapi import APIRouter, Request, status

from middleware import admin_route_guard
from models import CampaignCreate, CampaignUpdate
from services.campaign_service import campaign_service

router = APIRouter(prefix="/api/admin/campaigns", tags=["admin-campaigns"])


def _actor(admin: dict) -> str:
    return admin.get("admin_id") or admin.get("sub")


@router.get("")
async def list_campaigns(request: Request, active_only: bool = False):
    await admin_route_guard(request)
    return {"campaigns": await campaign_service.list_campaigns(active_only=active_only)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_campaign(body: CampaignCreate, request: Request):
    admin = await admin_route_guard(request)
    return await campaign_service.create_campaign(body, _actor(admin))


@router.get("/{campaign_id}")
async def get_campaign(campaign_id: int, request: Request):
    await admin_route_guard(request)
    return await campaign_service.get_campaign(campaign_id)


@router.patch("/{campaign_id}")
async def update_campaign(campaign_id: int, body: CampaignUpdate, request: Request):
    admin = await admin_route_guard(request)
    return await campaign_service.update_campaign(campaign_id, body, _actor(admin))


@router.post("/{campaign_id}/activate")
async def activate_campaign(campaign_id: int, request: Request):
    admin = await admin_route_guard(request)
    return await campaign_service.set_active(campaign_id, True, _actor(admin))


@router.post("/{campaign_id}/deactivate")
async def deactivate_campaign(campaign_id: int, request: Request):
    admin = await admin_route_guard(request)
    return await campaign_service.set_active(campaign_id, False, _actor(admin))


@router.get("/{campaign_id}/statistics")
async def campaign_statistics(campaign_id: int, request: Request):
    await admin_route_guard(request)
    return await campaign_service.statistics(campaign_id)
