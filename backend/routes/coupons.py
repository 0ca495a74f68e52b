"""
Coupon preview.

POST /api/coupons/validate - Discount preview for a plan. A rejected coupon is
a normal answer (200, valid=false, reason); only a malformed code is a 400.
"""
from fastapi import APIRouter, Request

from middleware import require_auth
from models import CouponValidateRequest
from services.billing_errors import CouponRejectedError
from services.campaign_service import campaign_service

router = APIRouter(prefix="/api/coupons", tags=["coupons"])


@router.post("/validate")
async def validate_coupon(body: CouponValidateRequest, request: Request):
    await require_auth(request)
    try:
        quote = await campaign_service.validate(body.coupon_code, body.plan_type)
    except CouponRejectedError as e:
        return {"valid": False, "reason": e.reason, "message": e.message}
    return quote.to_dict()
