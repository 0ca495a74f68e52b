"""
Subscription lifecycle: trial start, plan changes, past_due / recovery,
cancellation and trial reminder emails.
"""
import pytest

from models import EmailTemplateAlias, PlanType, Resource
from services.billing_errors import InvalidStateError, ValidationError
from services.entitlement_service import entitlement_service
from services.subscription_service import subscription_service


async def _add_accounts(db, subscriber_id: int, n: int):
    for i in range(n):
        await db.accounts.insert_one({"subscriber_id": subscriber_id, "account_id": f"acc-{subscriber_id}-{i}"})


async def test_start_trial(fake_db, frozen_clock, sent_notifications):
    profile = {"email": "joana@financetracker.ao", "first_name": "Joana", "last_name": "Costa", "password_hash": "h"}
    subscriber = await subscription_service.start_trial(profile, PlanType.PREMIUM)

    assert subscriber["subscription_status"] == "trialing"
    assert subscriber["plan_type"] == "premium"
    assert subscriber["entitlement_version"] == 1
    assert "password_hash" not in subscriber
    assert (subscriber["trial_ends_at"] - frozen_clock()).days == 14
    stored = await fake_db.subscribers.find_one({"subscriber_id": subscriber["subscriber_id"]})
    assert not {"organization_id", "org_role"} & set(stored)

    assert sent_notifications[-1]["template"] == EmailTemplateAlias.WELCOME_TRIAL
    assert sent_notifications[-1]["context"]["trial_days"] == 14
    assert await fake_db.audit_logs.count_documents({"action": "TRIAL_STARTED"}) == 1

    with pytest.raises(ValidationError) as exc:
        await subscription_service.start_trial(dict(profile), PlanType.BASIC)
    assert exc.value.error_code == "EMAIL_IN_USE"


async def test_downgrade_blocked_when_usage_exceeds_new_limit(fake_db, make_subscriber):
    sub = make_subscriber(PlanType.PREMIUM)
    await _add_accounts(fake_db, sub["subscriber_id"], 7)

    with pytest.raises(InvalidStateError) as exc:
        await subscription_service.change_plan(sub["subscriber_id"], PlanType.BASIC)
    assert exc.value.error_code == "DOWNGRADE_EXCEEDS_USAGE"
    assert exc.value.details["exceeding"] == [{"resource": "accounts", "current": 7, "new_limit": 5}]

    stored = await fake_db.subscribers.find_one({"subscriber_id": sub["subscriber_id"]})
    assert stored["plan_type"] == "premium"
    assert stored["entitlement_version"] == 1


async def test_downgrade_at_exact_limit_is_visible_immediately(fake_db, make_subscriber):
    sub = make_subscriber(PlanType.PREMIUM)
    await _add_accounts(fake_db, sub["subscriber_id"], 5)

    updated = await subscription_service.change_plan(sub["subscriber_id"], PlanType.BASIC, actor_id="1")
    assert updated["plan_type"] == "basic"
    assert updated["entitlement_version"] == 2

    snapshot = await entitlement_service.evaluate(sub["subscriber_id"])
    assert snapshot.plan.plan_type == PlanType.BASIC
    assert not snapshot.can_create(Resource.ACCOUNTS)
    assert not snapshot.has_feature("savings_goals")
    assert await fake_db.audit_logs.count_documents({"action": "PLAN_CHANGED"}) == 1


async def test_upgrade_is_free_only_during_trial(fake_db, make_subscriber):
    trial = make_subscriber(PlanType.BASIC)
    upgraded = await subscription_service.change_plan(trial["subscriber_id"], PlanType.PREMIUM)
    assert upgraded["plan_type"] == "premium"
    assert upgraded["subscription_status"] == "trialing"

    paying = make_subscriber(PlanType.BASIC, subscription_status="active")
    with pytest.raises(InvalidStateError) as exc:
        await subscription_service.change_plan(paying["subscriber_id"], PlanType.PREMIUM)
    assert exc.value.error_code == "UPGRADE_REQUIRES_PAYMENT"

    with pytest.raises(InvalidStateError) as exc:
        await subscription_service.change_plan(paying["subscriber_id"], PlanType.BASIC)
    assert exc.value.error_code == "PLAN_UNCHANGED"


async def test_plan_change_needs_live_subscription(fake_db, make_subscriber):
    sub = make_subscriber(PlanType.PREMIUM, subscription_status="past_due")
    with pytest.raises(InvalidStateError) as exc:
        await subscription_service.change_plan(sub["subscriber_id"], PlanType.BASIC)
    assert exc.value.error_code == "SUBSCRIPTION_INACTIVE"


async def test_past_due_and_recovery(fake_db, make_subscriber, sent_notifications):
    sub = make_subscriber(subscription_status="active")

    past_due = await subscription_service.mark_past_due(sub["subscriber_id"], "invoice_unpaid")
    assert past_due["subscription_status"] == "past_due"
    assert past_due["past_due_reason"] == "invoice_unpaid"
    assert sent_notifications[-1]["template"] == EmailTemplateAlias.SUBSCRIPTION_PAST_DUE

    # Only an active subscription can fall past due
    with pytest.raises(InvalidStateError):
        await subscription_service.mark_past_due(sub["subscriber_id"], "again")

    recovered = await subscription_service.recover(sub["subscriber_id"])
    assert recovered["subscription_status"] == "active"
    assert recovered["past_due_reason"] is None
    assert recovered["entitlement_version"] == 3

    with pytest.raises(InvalidStateError):
        await subscription_service.recover(sub["subscriber_id"])


async def test_trialing_cannot_become_past_due(fake_db, make_subscriber):
    sub = make_subscriber()
    with pytest.raises(InvalidStateError):
        await subscription_service.mark_past_due(sub["subscriber_id"], "invoice_unpaid")


async def test_cancel(fake_db, make_subscriber, sent_notifications):
    sub = make_subscriber(subscription_status="active")

    canceled = await subscription_service.cancel(sub["subscriber_id"], "too_expensive", actor_id="1")
    assert canceled["subscription_status"] == "canceled"
    assert canceled["canceled_reason"] == "too_expensive"
    assert sent_notifications[-1]["template"] == EmailTemplateAlias.SUBSCRIPTION_CANCELED

    with pytest.raises(InvalidStateError):
        await subscription_service.cancel(sub["subscriber_id"])

    status = await subscription_service.get_status(sub["subscriber_id"])
    assert status["is_active"] is False
    assert status["trial_days_left"] == 0


async def test_get_status_for_trial(fake_db, frozen_clock, make_subscriber):
    sub = make_subscriber(PlanType.PREMIUM)
    frozen_clock.advance(days=4, hours=1)

    status = await subscription_service.get_status(sub["subscriber_id"])
    assert status["status"] == "trialing"
    assert status["plan_type"] == "premium"
    assert status["trial_days_left"] == 10
    assert status["is_active"] is True
    assert status["current_period_end"] is None


async def test_trial_reminders_sent_once_per_threshold(fake_db, frozen_clock, make_subscriber):
    sub = make_subscriber()
    make_subscriber()

    # 10 days left: nothing due
    frozen_clock.advance(days=4)
    result = await subscription_service.send_trial_reminders()
    assert result["sent"] == []
    assert result["checked"] == 0

    frozen_clock.advance(days=7)  # exactly 3 days left
    preview = await subscription_service.send_trial_reminders(dry_run=True)
    assert preview["dry_run"] is True
    assert {s["days_left"] for s in preview["sent"]} == {3}
    assert await fake_db.message_logs.count_documents({}) == 0

    result = await subscription_service.send_trial_reminders()
    assert sorted(s["subscriber_id"] for s in result["sent"]) == [sub["subscriber_id"], sub["subscriber_id"] + 1]
    assert await fake_db.message_logs.count_documents({"template_alias": "trial-ending"}) == 2

    again = await subscription_service.send_trial_reminders()
    assert again["sent"] == []
    assert again["skipped"] == 2

    frozen_clock.advance(days=2)  # 1 day left
    result = await subscription_service.send_trial_reminders()
    assert {s["days_left"] for s in result["sent"]} == {1}

    stored = await fake_db.subscribers.find_one({"subscriber_id": sub["subscriber_id"]})
    assert stored["trial_warnings_sent"] == [3, 1]
    assert stored["subscription_status"] == "trialing"
    assert await fake_db.audit_logs.count_documents({"action": "TRIAL_WARNING_SENT"}) == 4
