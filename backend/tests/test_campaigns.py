"""
Campaign / coupon engine: discount math, eligibility reasons, redemption
bookkeeping and admin statistics.
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from models import CampaignCreate, CampaignUpdate, DiscountType, PlanType
from services.billing_errors import CouponRejectedError, NotFoundError, ValidationError
from services.campaign_service import campaign_service, compute_discount, normalize_code
from utils import clock


def _campaign(code="SAVE2000", discount_type=DiscountType.FIXED, value="2000", **kwargs) -> CampaignCreate:
    return CampaignCreate(
        name=kwargs.pop("name", "Promo"),
        coupon_code=code,
        discount_type=discount_type,
        discount_value=Decimal(value),
        **kwargs,
    )


class TestComputeDiscount:
    def test_fixed_discount(self):
        assert compute_discount(DiscountType.FIXED, Decimal("2000"), Decimal("14500.00")) == Decimal("2000.00")

    def test_fixed_discount_never_exceeds_amount(self):
        discount = compute_discount(DiscountType.FIXED, Decimal("2000"), Decimal("1500.00"))
        assert discount == Decimal("1500.00")
        assert Decimal("1500.00") - discount == Decimal("0.00")

    def test_percentage_discount(self):
        assert compute_discount(DiscountType.PERCENTAGE, Decimal("15"), Decimal("14500.00")) == Decimal("2175.00")
        assert compute_discount(DiscountType.PERCENTAGE, Decimal("100"), Decimal("29500.00")) == Decimal("29500.00")

    def test_percentage_rounds_half_up_to_cents(self):
        assert compute_discount(DiscountType.PERCENTAGE, Decimal("12.5"), Decimal("0.20")) == Decimal("0.03")
        assert compute_discount(DiscountType.PERCENTAGE, Decimal("33.33"), Decimal("100.00")) == Decimal("33.33")


def test_normalize_code():
    assert normalize_code("  save2000 ") == "SAVE2000"
    for bad in ("", "ab", "WITH SPACE", "BAD!", "X" * 33, None):
        with pytest.raises(ValidationError) as exc:
            normalize_code(bad)
        assert exc.value.error_code == "INVALID_COUPON_CODE"


async def test_validate_fixed_coupon_on_basic(fake_db):
    await campaign_service.create_campaign(_campaign(), "admin-001")

    quote = await campaign_service.validate("save2000", PlanType.BASIC)
    assert quote.final_price == Decimal("12500.00")
    result = quote.to_dict()
    assert result["valid"] is True
    assert result["campaign"]["coupon_code"] == "SAVE2000"
    assert result["discount"] == {
        "amount": "2000.00",
        "percentage": 13.79,
        "original_price": "14500.00",
        "final_price": "12500.00",
    }


async def test_validation_has_no_side_effects(fake_db):
    created = await campaign_service.create_campaign(_campaign(max_uses=1), "admin-001")
    for _ in range(3):
        await campaign_service.validate("SAVE2000", PlanType.BASIC)

    stored = await campaign_service.get_campaign(created["campaign_id"])
    assert stored["usage_count"] == 0
    assert await fake_db.coupon_redemptions.count_documents({}) == 0


@pytest.mark.parametrize("setup, reason", [
    ({}, "NOT_FOUND"),
    ({"is_active": False}, "INACTIVE"),
    ({"valid_until": "past"}, "EXPIRED"),
    ({"valid_from": "future"}, "EXPIRED"),
    ({"applicable_plans": [PlanType.PREMIUM]}, "PLAN_NOT_ELIGIBLE"),
])
async def test_rejection_reasons(fake_db, setup, reason):
    now = clock.utcnow()
    if setup:
        fields = dict(setup)
        if fields.get("valid_until") == "past":
            fields["valid_until"] = now - timedelta(days=1)
        if fields.get("valid_from") == "future":
            fields["valid_from"] = now + timedelta(days=1)
        await campaign_service.create_campaign(_campaign(**fields), "admin-001")

    with pytest.raises(CouponRejectedError) as exc:
        await campaign_service.validate("SAVE2000", PlanType.BASIC)
    assert exc.value.reason == reason


async def test_usage_limit_reached(fake_db):
    created = await campaign_service.create_campaign(_campaign(max_uses=1), "admin-001")
    assert await campaign_service.redeem(created["campaign_id"], 1, 1, "basic", Decimal("2000"))

    with pytest.raises(CouponRejectedError) as exc:
        await campaign_service.validate("SAVE2000", PlanType.BASIC)
    assert exc.value.reason == "USAGE_LIMIT_REACHED"


async def test_redeem_is_once_per_transaction(fake_db):
    created = await campaign_service.create_campaign(_campaign(), "admin-001")

    assert await campaign_service.redeem(created["campaign_id"], 7, 1, "basic", Decimal("2000")) is True
    assert await campaign_service.redeem(created["campaign_id"], 7, 1, "basic", Decimal("2000")) is False

    stored = await campaign_service.get_campaign(created["campaign_id"])
    assert stored["usage_count"] == 1
    assert await fake_db.coupon_redemptions.count_documents({"campaign_id": created["campaign_id"]}) == 1


async def test_duplicate_code_rejected(fake_db):
    await campaign_service.create_campaign(_campaign(), "admin-001")
    with pytest.raises(ValidationError) as exc:
        await campaign_service.create_campaign(_campaign(code="save2000", name="Other"), "admin-001")
    assert exc.value.error_code == "DUPLICATE_COUPON_CODE"


async def test_invalid_campaign_values(fake_db):
    with pytest.raises(ValidationError) as exc:
        await campaign_service.create_campaign(_campaign(discount_type=DiscountType.PERCENTAGE, value="150"), "a")
    assert exc.value.error_code == "INVALID_DISCOUNT"

    now = clock.utcnow()
    with pytest.raises(ValidationError) as exc:
        await campaign_service.create_campaign(
            _campaign(valid_from=now, valid_until=now - timedelta(days=1)), "a"
        )
    assert exc.value.error_code == "INVALID_VALIDITY_WINDOW"


async def test_update_and_deactivate(fake_db):
    created = await campaign_service.create_campaign(_campaign(), "admin-001")
    updated = await campaign_service.update_campaign(
        created["campaign_id"],
        CampaignUpdate(discount_type=DiscountType.PERCENTAGE, discount_value=Decimal("10")),
        "admin-001",
    )
    assert updated["discount_type"] == "percentage"
    assert updated["discount_value"] == "10"

    quote = await campaign_service.validate("SAVE2000", PlanType.PREMIUM)
    assert quote.discount_amount == Decimal("2950.00")

    await campaign_service.set_active(created["campaign_id"], False, "admin-001")
    with pytest.raises(CouponRejectedError):
        await campaign_service.validate("SAVE2000", PlanType.PREMIUM)
    assert await fake_db.audit_logs.count_documents({"action": "CAMPAIGN_UPDATED"}) == 2


async def test_statistics(fake_db):
    created = await campaign_service.create_campaign(_campaign(max_uses=10), "admin-001")
    cid = created["campaign_id"]
    await campaign_service.redeem(cid, 1, 1, "basic", Decimal("2000"))
    await campaign_service.redeem(cid, 2, 2, "premium", Decimal("2000"))
    await campaign_service.redeem(cid, 3, 3, "premium", Decimal("2000"))

    stats = await campaign_service.statistics(cid)
    assert stats["usage_count"] == 3
    assert stats["remaining_uses"] == 7
    assert stats["redemptions"] == 3
    assert stats["total_discount"] == "6000.00"
    assert stats["redemptions_by_plan"] == {"basic": 1, "premium": 2}


async def test_unknown_campaign(fake_db):
    with pytest.raises(NotFoundError):
        await campaign_service.get_campaign(404)
