"""
Admin reconciliation of manual payments.

- Approve completes the payment, redeems the coupon and activates the plan
- Reject needs a reason and leaves the subscription untouched
- A failure during approval rolls the whole unit back
"""
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from models import CampaignCreate, DiscountType, EmailTemplateAlias, PaymentProofRequest, PlanType, ReviewDecision
from services.billing_errors import InvalidStateError, ValidationError
from services.campaign_service import campaign_service
from services.payment_service import payment_service
from services.reconciliation_service import reconciliation_service
from services.subscription_service import subscription_service

REVIEWER = "admin-001"


async def _payment_under_review(subscriber, plan_type=PlanType.PREMIUM, coupon_code=None):
    txn = await payment_service.create_payment(subscriber["subscriber_id"], plan_type, "bank_transfer", coupon_code)
    return await payment_service.submit_proof(txn["transaction_id"], subscriber["subscriber_id"], PaymentProofRequest(
        proof_description="Transferencia BFA",
        evidence_reference="receipts/bfa-0310.png",
    ))


async def _coupon():
    return await campaign_service.create_campaign(CampaignCreate(
        name="Launch", coupon_code="LAUNCH15", discount_type=DiscountType.PERCENTAGE, discount_value=Decimal("15"),
    ), REVIEWER)


async def test_approve_activates_plan_and_redeems_coupon(fake_db, make_subscriber, sent_notifications):
    sub = make_subscriber(PlanType.BASIC)
    campaign = await _coupon()
    txn = await _payment_under_review(sub, coupon_code="LAUNCH15")
    assert txn["final_amount"] == "25075.00"

    approved = await reconciliation_service.review(txn["transaction_id"], ReviewDecision.APPROVE, REVIEWER)
    assert approved["status"] == "completed"
    assert approved["completed_via"] == "admin_review"
    assert approved["reviewed_by"] == REVIEWER

    subscriber = await subscription_service.get_subscriber(sub["subscriber_id"])
    assert subscriber["subscription_status"] == "active"
    assert subscriber["plan_type"] == "premium"
    assert subscriber["last_payment_transaction_id"] == txn["transaction_id"]
    assert subscriber["current_period_end"] is not None

    assert (await campaign_service.get_campaign(campaign["campaign_id"]))["usage_count"] == 1
    assert await fake_db.coupon_redemptions.count_documents({"transaction_id": txn["transaction_id"]}) == 1
    proof = await fake_db.payment_proofs.find_one({"transaction_id": txn["transaction_id"]})
    assert proof["decision"] == "approved"
    assert proof["reviewer_id"] == REVIEWER
    assert sent_notifications[-1]["template"] == EmailTemplateAlias.SUBSCRIPTION_ACTIVATED

    with pytest.raises(InvalidStateError) as exc:
        await reconciliation_service.review(txn["transaction_id"], ReviewDecision.APPROVE, REVIEWER)
    assert exc.value.error_code == "NOT_UNDER_REVIEW"
    assert (await campaign_service.get_campaign(campaign["campaign_id"]))["usage_count"] == 1


async def test_reject_requires_reason_and_keeps_subscription(fake_db, make_subscriber, sent_notifications):
    sub = make_subscriber(PlanType.BASIC)
    campaign = await _coupon()
    txn = await _payment_under_review(sub, coupon_code="LAUNCH15")

    with pytest.raises(ValidationError) as exc:
        await reconciliation_service.review(txn["transaction_id"], ReviewDecision.REJECT, REVIEWER, reason="  ")
    assert exc.value.error_code == "REASON_REQUIRED"

    rejected = await reconciliation_service.review(
        txn["transaction_id"], ReviewDecision.REJECT, REVIEWER, reason="Amount does not match"
    )
    assert rejected["status"] == "rejected"
    assert rejected["failure_reason"] == "Amount does not match"
    assert rejected["next_action"] == "contact_support"

    subscriber = await subscription_service.get_subscriber(sub["subscriber_id"])
    assert subscriber["subscription_status"] == "trialing"
    assert subscriber["plan_type"] == "basic"
    assert subscriber["entitlement_version"] == 1

    assert (await campaign_service.get_campaign(campaign["campaign_id"]))["usage_count"] == 0
    proof = await fake_db.payment_proofs.find_one({"transaction_id": txn["transaction_id"]})
    assert proof["decision"] == "rejected"
    assert proof["rejection_reason"] == "Amount does not match"
    assert sent_notifications[-1]["template"] == EmailTemplateAlias.PAYMENT_REJECTED


async def test_only_payments_under_review_can_be_decided(fake_db, make_subscriber):
    sub = make_subscriber()
    txn = await payment_service.create_payment(sub["subscriber_id"], PlanType.BASIC, "bank_transfer")

    with pytest.raises(InvalidStateError) as exc:
        await reconciliation_service.review(txn["transaction_id"], ReviewDecision.APPROVE, REVIEWER)
    assert exc.value.error_code == "NOT_UNDER_REVIEW"
    assert exc.value.details["status"] == "awaiting_proof"


async def test_pending_queue(fake_db, make_subscriber):
    first = make_subscriber()
    second = make_subscriber()
    older = await _payment_under_review(first)
    await payment_service.create_payment(second["subscriber_id"], PlanType.BASIC, "bank_transfer")

    queue = await reconciliation_service.list_pending()
    assert [p["transaction_id"] for p in queue] == [older["transaction_id"]]
    item = queue[0]
    assert item["proof"]["evidence_reference"] == "receipts/bfa-0310.png"
    assert item["subscriber"]["email"] == first["email"]
    assert "password_hash" not in item["subscriber"]


async def test_failed_activation_rolls_back_completion(fake_db, make_subscriber):
    sub = make_subscriber(PlanType.BASIC)
    campaign = await _coupon()
    txn = await _payment_under_review(sub, coupon_code="LAUNCH15")

    boom = AsyncMock(side_effect=RuntimeError("activation failed"))
    with patch.object(subscription_service, "activate", boom):
        with pytest.raises(RuntimeError):
            await reconciliation_service.review(txn["transaction_id"], ReviewDecision.APPROVE, REVIEWER)

    stored = await fake_db.payment_transactions.find_one({"transaction_id": txn["transaction_id"]})
    assert stored["status"] == "under_review"
    assert await fake_db.coupon_redemptions.count_documents({}) == 0
    assert (await campaign_service.get_campaign(campaign["campaign_id"]))["usage_count"] == 0
    proof = await fake_db.payment_proofs.find_one({"transaction_id": txn["transaction_id"]})
    assert proof["decision"] is None

    # The payment can still be approved afterwards
    approved = await reconciliation_service.review(txn["transaction_id"], ReviewDecision.APPROVE, REVIEWER)
    assert approved["status"] == "completed"
