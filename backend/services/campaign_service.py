"""Campaign / Coupon Engine.

Validation is side-effect free and may be called any number of times.
A coupon is only consumed (usage_count + 1, one redemption row) inside the
atomic completion of the payment that locked it in; failed, rejected and
expired payments never touch the counter. For capped campaigns each open
payment holds one of the remaining uses until it ends.

Discount rules:
- percentage: amount * value / 100, rounded half-up to cents
- fixed: min(value, amount)
The final amount is never negative.
"""
import logging
import re
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    AuditAction,
    CampaignCreate,
    CampaignUpdate,
    CouponRejectionReason,
    DiscountType,
    PENDING_REVIEW_STATUSES,
    PlanType,
    TERMINAL_PAYMENT_STATUSES,
    UserRole,
)
from services.billing_errors import CouponRejectedError, NotFoundError, ValidationError
from services.plan_catalog import Plan, plan_catalog
from services.sequence_service import next_value
from utils import clock
from utils.audit import create_audit_log
from utils.money import CENT, ZERO, money_str, to_money

logger = logging.getLogger(__name__)

COUPON_CODE_PATTERN = re.compile(r"^[A-Z0-9_-]{3,32}$")

REJECTION_MESSAGES = {
    CouponRejectionReason.NOT_FOUND: "Coupon code not found",
    CouponRejectionReason.INACTIVE: "This coupon is no longer active",
    CouponRejectionReason.EXPIRED: "This coupon is not valid at this time",
    CouponRejectionReason.USAGE_LIMIT_REACHED: "This coupon has reached its usage limit",
    CouponRejectionReason.PLAN_NOT_ELIGIBLE: "This coupon does not apply to the selected plan",
}


def normalize_code(raw: Optional[str]) -> str:
    code = (raw or "").strip().upper()
    if not code or not COUPON_CODE_PATTERN.match(code):
        raise ValidationError(
            "Coupon code must be 3-32 characters: letters, digits, '-' or '_'",
            error_code="INVALID_COUPON_CODE",
        )
    return code


def compute_discount(discount_type: DiscountType, value: Decimal, amount: Decimal) -> Decimal:
    amount = to_money(amount)
    value = Decimal(str(value))
    if discount_type == DiscountType.PERCENTAGE:
        discount = (amount * value / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)
    else:
        discount = to_money(min(value, amount))
    return max(ZERO, min(discount, amount))


@dataclass(frozen=True)
class CouponQuote:
    campaign: Dict[str, Any]
    original_price: Decimal
    discount_amount: Decimal

    @property
    def final_price(self) -> Decimal:
        return self.original_price - self.discount_amount

    @property
    def campaign_id(self) -> int:
        return self.campaign["campaign_id"]

    def to_dict(self) -> Dict[str, Any]:
        percentage = None
        if self.original_price > 0:
            percentage = float((self.discount_amount / self.original_price * 100).quantize(CENT))
        return {
            "valid": True,
            "campaign": {
                "campaign_id": self.campaign["campaign_id"],
                "name": self.campaign["name"],
                "coupon_code": self.campaign["coupon_code"],
                "discount_type": self.campaign["discount_type"],
                "discount_value": self.campaign["discount_value"],
            },
            "discount": {
                "amount": money_str(self.discount_amount),
                "percentage": percentage,
                "original_price": money_str(self.original_price),
                "final_price": money_str(self.final_price),
            },
        }


def _reject(reason: CouponRejectionReason) -> CouponRejectedError:
    return CouponRejectedError(reason=reason.value, message=REJECTION_MESSAGES[reason])


def _public(campaign: Dict[str, Any]) -> Dict[str, Any]:
    campaign = dict(campaign)
    campaign.pop("_id", None)
    return campaign


class CampaignService:

    def check_eligibility(self, campaign: Dict[str, Any], plan_type: PlanType, now=None) -> None:
        """Raise CouponRejectedError when `campaign` cannot be applied to `plan_type` now."""
        now = now or clock.utcnow()
        if not campaign.get("is_active", False):
            raise _reject(CouponRejectionReason.INACTIVE)
        valid_from = clock.ensure_utc(campaign.get("valid_from"))
        valid_until = clock.ensure_utc(campaign.get("valid_until"))
        if (valid_from and now < valid_from) or (valid_until and now > valid_until):
            raise _reject(CouponRejectionReason.EXPIRED)
        max_uses = campaign.get("max_uses")
        if max_uses is not None and campaign.get("usage_count", 0) >= max_uses:
            raise _reject(CouponRejectionReason.USAGE_LIMIT_REACHED)
        applicable = campaign.get("applicable_plans") or []
        if applicable and plan_type.value not in applicable:
            raise _reject(CouponRejectionReason.PLAN_NOT_ELIGIBLE)

    async def quote(self, code: str, plan: Plan, session=None) -> CouponQuote:
        db = database.get_db()
        normalized = normalize_code(code)
        campaign = await db.campaigns.find_one({"coupon_code": normalized}, {"_id": 0}, session=session)
        if not campaign:
            raise _reject(CouponRejectionReason.NOT_FOUND)
        self.check_eligibility(campaign, plan.plan_type)
        discount = compute_discount(
            DiscountType(campaign["discount_type"]),
            Decimal(campaign["discount_value"]),
            plan.price,
        )
        return CouponQuote(campaign=campaign, original_price=plan.price, discount_amount=discount)

    async def open_reservations(self, campaign_id: int, session=None) -> int:
        """Payments still able to redeem this campaign: not terminal, and not past their proof window."""
        db = database.get_db()
        now = clock.utcnow()
        return await db.payment_transactions.count_documents({
            "campaign_id": campaign_id,
            "status": {"$nin": [s.value for s in TERMINAL_PAYMENT_STATUSES]},
            "$or": [
                {"expires_at": None},
                {"expires_at": {"$gte": now}},
                {"status": {"$in": [s.value for s in PENDING_REVIEW_STATUSES]}},
            ],
        }, session=session)

    async def reserve(self, campaign_id: int, session=None) -> None:
        """Hold one use of a capped campaign for a new payment.

        Completed uses plus open payments may not exceed max_uses. The
        campaign document is written first so concurrent reservations
        conflict inside their transactions.
        """
        db = database.get_db()
        campaign = await db.campaigns.find_one_and_update(
            {"campaign_id": campaign_id},
            {"$set": {"last_reserved_at": clock.utcnow()}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if not campaign:
            raise _reject(CouponRejectionReason.NOT_FOUND)
        max_uses = campaign.get("max_uses")
        if max_uses is None:
            return
        held = await self.open_reservations(campaign_id, session=session)
        if campaign.get("usage_count", 0) + held >= max_uses:
            logger.info(f"COUPON_CAP_HELD campaign_id={campaign_id} usage={campaign.get('usage_count', 0)} open={held}")
            raise _reject(CouponRejectionReason.USAGE_LIMIT_REACHED)

    async def validate(self, code: str, plan_type: PlanType) -> CouponQuote:
        plan = await plan_catalog.get_plan(plan_type)
        return await self.quote(code, plan)

    async def redeem(
        self,
        campaign_id: int,
        transaction_id: int,
        subscriber_id: int,
        plan_type: str,
        discount_amount: Decimal,
        session=None,
    ) -> bool:
        """Record one use. Returns False if this transaction already redeemed."""
        db = database.get_db()
        try:
            await db.coupon_redemptions.insert_one({
                "campaign_id": campaign_id,
                "transaction_id": transaction_id,
                "subscriber_id": subscriber_id,
                "plan_type": plan_type,
                "discount_amount": money_str(discount_amount),
                "redeemed_at": clock.utcnow(),
            }, session=session)
        except DuplicateKeyError:
            logger.info(f"Coupon already redeemed for transaction {transaction_id}")
            return False
        await db.campaigns.update_one(
            {"campaign_id": campaign_id},
            {"$inc": {"usage_count": 1}},
            session=session,
        )
        return True

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    async def create_campaign(self, data: CampaignCreate, actor_id: str) -> Dict[str, Any]:
        db = database.get_db()
        code = normalize_code(data.coupon_code)
        _check_discount_value(data.discount_type, data.discount_value)
        _check_window(data.valid_from, data.valid_until)

        now = clock.utcnow()
        campaign = {
            "campaign_id": await next_value("campaign_id"),
            "name": data.name,
            "description": data.description,
            "coupon_code": code,
            "discount_type": data.discount_type.value,
            "discount_value": str(data.discount_value),
            "applicable_plans": [p.value for p in data.applicable_plans],
            "max_uses": data.max_uses,
            "usage_count": 0,
            "is_active": data.is_active,
            "valid_from": data.valid_from,
            "valid_until": data.valid_until,
            "created_by": actor_id,
            "created_at": now,
            "updated_at": now,
        }
        try:
            await db.campaigns.insert_one(campaign)
        except DuplicateKeyError:
            raise ValidationError(f"Coupon code {code} is already in use", error_code="DUPLICATE_COUPON_CODE")

        await create_audit_log(
            action=AuditAction.CAMPAIGN_CREATED,
            actor_role=UserRole.ROLE_ADMIN,
            actor_id=actor_id,
            resource_type="campaign",
            resource_id=str(campaign["campaign_id"]),
            metadata={"coupon_code": code},
        )
        return _public(campaign)

    async def get_campaign(self, campaign_id: int) -> Dict[str, Any]:
        db = database.get_db()
        campaign = await db.campaigns.find_one({"campaign_id": campaign_id}, {"_id": 0})
        if not campaign:
            raise NotFoundError(f"Campaign not found: {campaign_id}", error_code="CAMPAIGN_NOT_FOUND")
        return campaign

    async def list_campaigns(self, active_only: bool = False) -> List[Dict[str, Any]]:
        db = database.get_db()
        query = {"is_active": True} if active_only else {}
        return await db.campaigns.find(query, {"_id": 0}).sort("created_at", -1).to_list(length=500)

    async def update_campaign(self, campaign_id: int, data: CampaignUpdate, actor_id: str) -> Dict[str, Any]:
        db = database.get_db()
        before = await self.get_campaign(campaign_id)
        changes = data.model_dump(exclude_unset=True)

        discount_type = DiscountType(changes.get("discount_type") or before["discount_type"])
        if "discount_value" in changes or "discount_type" in changes:
            value = changes.get("discount_value")
            value = Decimal(str(value)) if value is not None else Decimal(before["discount_value"])
            _check_discount_value(discount_type, value)
            changes["discount_value"] = str(value)
            changes["discount_type"] = discount_type.value
        if "applicable_plans" in changes and changes["applicable_plans"] is not None:
            changes["applicable_plans"] = [PlanType(p).value for p in changes["applicable_plans"]]
        _check_window(
            changes.get("valid_from", before.get("valid_from")),
            changes.get("valid_until", before.get("valid_until")),
        )
        changes["updated_at"] = clock.utcnow()

        updated = await db.campaigns.find_one_and_update(
            {"campaign_id": campaign_id},
            {"$set": changes},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        await create_audit_log(
            action=AuditAction.CAMPAIGN_UPDATED,
            actor_role=UserRole.ROLE_ADMIN,
            actor_id=actor_id,
            resource_type="campaign",
            resource_id=str(campaign_id),
            before_state={k: before.get(k) for k in changes if k != "updated_at"},
            after_state={k: updated.get(k) for k in changes if k != "updated_at"},
        )
        return updated

    async def set_active(self, campaign_id: int, is_active: bool, actor_id: str) -> Dict[str, Any]:
        return await self.update_campaign(campaign_id, CampaignUpdate(is_active=is_active), actor_id)

    async def statistics(self, campaign_id: int) -> Dict[str, Any]:
        db = database.get_db()
        campaign = await self.get_campaign(campaign_id)
        redemptions = await db.coupon_redemptions.find(
            {"campaign_id": campaign_id}, {"_id": 0}
        ).to_list(length=None)

        total_discount = sum((Decimal(r["discount_amount"]) for r in redemptions), ZERO)
        by_plan: Dict[str, int] = {}
        for r in redemptions:
            by_plan[r.get("plan_type") or "unknown"] = by_plan.get(r.get("plan_type") or "unknown", 0) + 1

        max_uses = campaign.get("max_uses")
        usage_count = campaign.get("usage_count", 0)
        return {
            "campaign_id": campaign_id,
            "coupon_code": campaign["coupon_code"],
            "usage_count": usage_count,
            "max_uses": max_uses,
            "remaining_uses": None if max_uses is None else max(0, max_uses - usage_count),
            "redemptions": len(redemptions),
            "total_discount": money_str(total_discount),
            "redemptions_by_plan": by_plan,
            "is_active": campaign.get("is_active", False),
        }


def _check_discount_value(discount_type: DiscountType, value: Decimal) -> None:
    if value <= 0:
        raise ValidationError("Discount value must be greater than zero", error_code="INVALID_DISCOUNT")
    if discount_type == DiscountType.PERCENTAGE and value > 100:
        raise ValidationError("Percentage discount cannot exceed 100", error_code="INVALID_DISCOUNT")


def _check_window(valid_from, valid_until) -> None:
    if valid_from and valid_until and clock.ensure_utc(valid_from) >= clock.ensure_utc(valid_until):
        raise ValidationError("valid_from must be before valid_until", error_code="INVALID_VALIDITY_WINDOW")


campaign_service = CampaignService()
