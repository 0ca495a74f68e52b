"""Subscription Lifecycle Controller.

Sole writer of subscriber status, plan and trial fields.

States: trialing, active, past_due, canceled.

    trialing -> active | canceled
    active   -> active (renewal / paid upgrade) | past_due | canceled
    past_due -> active | canceled
    canceled -> active   (only through a completed payment)

Every transition is a conditional update on the expected current status and
bumps `entitlement_version` so clients can drop cached entitlements.
Trial expiry is evaluated lazily whenever the subscriber is read, except
while a manual payment of theirs waits for review.
"""
import logging
import math
from datetime import timedelta
from typing import Any, Dict, Iterable, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    AuditAction,
    EmailTemplateAlias,
    PENDING_REVIEW_STATUSES,
    PlanType,
    Resource,
    SubscriptionStatus,
    UserRole,
)
from services.billing_errors import (
    ConcurrencyConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from services.notification_service import notification_service
from services.plan_catalog import plan_catalog
from services.sequence_service import next_value
from services.usage_counter import resource_usage
from services.usage_lease import usage_lease
from utils import clock
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

BILLING_PERIOD_DAYS = 30
TRIAL_EXPIRED_REASON = "trial_expired"
# Days before trial end on which a reminder goes out, once each
TRIAL_REMINDER_DAYS = (3, 1)

SUBSCRIPTION_TRANSITIONS = {
    SubscriptionStatus.TRIALING: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED}),
    SubscriptionStatus.ACTIVE: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED,
    }),
    SubscriptionStatus.PAST_DUE: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED}),
    SubscriptionStatus.CANCELED: frozenset({SubscriptionStatus.ACTIVE}),
}

PUBLIC_SUBSCRIBER_PROJECTION = {"_id": 0, "password_hash": 0, "usage_lock_until": 0, "usage_lock_owner": 0}


def sources_for(target: SubscriptionStatus) -> list:
    """Statuses from which `target` is reachable."""
    return [s.value for s, targets in SUBSCRIPTION_TRANSITIONS.items() if target in targets]


def trial_days_left(subscriber: Dict[str, Any]) -> int:
    ends = clock.ensure_utc(subscriber.get("trial_ends_at"))
    if subscriber.get("subscription_status") != SubscriptionStatus.TRIALING.value or not ends:
        return 0
    seconds = (ends - clock.utcnow()).total_seconds()
    return max(0, math.ceil(seconds / 86400))


class SubscriptionService:

    async def get_subscriber(self, subscriber_id: int, session=None) -> Dict[str, Any]:
        db = database.get_db()
        subscriber = await db.subscribers.find_one(
            {"subscriber_id": subscriber_id}, PUBLIC_SUBSCRIBER_PROJECTION, session=session
        )
        if not subscriber:
            raise NotFoundError(f"Subscriber not found: {subscriber_id}", error_code="SUBSCRIBER_NOT_FOUND")
        return subscriber

    async def start_trial(self, profile: Dict[str, Any], plan_type: PlanType = PlanType.BASIC) -> Dict[str, Any]:
        """Create a subscriber in `trialing` at sign-up."""
        db = database.get_db()
        plan = await plan_catalog.get_plan(plan_type)
        if not plan.is_active:
            raise ValidationError(f"Plan {plan_type.value} is not available", error_code="PLAN_INACTIVE")

        now = clock.utcnow()
        subscriber_id = await next_value("subscriber_id")
        doc = {
            **profile,
            "subscriber_id": subscriber_id,
            "subscription_status": SubscriptionStatus.TRIALING.value,
            "plan_type": plan.plan_type.value,
            "trial_ends_at": now + timedelta(days=plan.trial_days),
            "current_period_end": None,
            "canceled_reason": None,
            "entitlement_version": 1,
            "trial_warnings_sent": [],
            "created_at": now,
            "updated_at": now,
        }
        try:
            await db.subscribers.insert_one(doc)
        except DuplicateKeyError:
            raise ValidationError("An account with this email already exists", error_code="EMAIL_IN_USE")

        await create_audit_log(
            action=AuditAction.TRIAL_STARTED,
            actor_role=UserRole.ROLE_SUBSCRIBER,
            actor_id=str(subscriber_id),
            subscriber_id=subscriber_id,
            resource_type="subscriber",
            resource_id=str(subscriber_id),
            metadata={"plan_type": plan.plan_type.value, "trial_days": plan.trial_days},
        )
        notification_service.notify(
            subscriber_id,
            EmailTemplateAlias.WELCOME_TRIAL,
            plan_type=plan.name,
            trial_days=plan.trial_days,
            trial_ends_at=doc["trial_ends_at"].date().isoformat(),
        )
        logger.info(f"TRIAL_STARTED subscriber_id={subscriber_id} plan_type={plan.plan_type.value}")
        doc.pop("_id", None)
        doc.pop("password_hash", None)
        return doc

    async def _transition(
        self,
        subscriber_id: int,
        target: SubscriptionStatus,
        from_statuses: Iterable[str],
        set_fields: Optional[Dict[str, Any]] = None,
        extra_filter: Optional[Dict[str, Any]] = None,
        session=None,
    ) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        query = {"subscriber_id": subscriber_id, "subscription_status": {"$in": list(from_statuses)}}
        if extra_filter:
            query.update(extra_filter)
        fields = {"subscription_status": target.value, "updated_at": clock.utcnow()}
        fields.update(set_fields or {})
        return await db.subscribers.find_one_and_update(
            query,
            {"$set": fields, "$inc": {"entitlement_version": 1}},
            projection=PUBLIC_SUBSCRIBER_PROJECTION,
            return_document=ReturnDocument.AFTER,
            session=session,
        )

    async def activate(
        self,
        subscriber_id: int,
        plan_type: str,
        transaction_id: int,
        session=None,
    ) -> Dict[str, Any]:
        """Active on `plan_type` for one billing period. Called only by payment completion."""
        before = await self.get_subscriber(subscriber_id, session=session)
        now = clock.utcnow()
        updated = await self._transition(
            subscriber_id,
            SubscriptionStatus.ACTIVE,
            sources_for(SubscriptionStatus.ACTIVE),
            set_fields={
                "plan_type": plan_type,
                "current_period_end": now + timedelta(days=BILLING_PERIOD_DAYS),
                "activated_at": now,
                "canceled_reason": None,
                "last_payment_transaction_id": transaction_id,
            },
            session=session,
        )
        if not updated:
            raise ConcurrencyConflictError(f"Subscriber {subscriber_id} changed during activation")

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_ACTIVATED,
            actor_role=UserRole.ROLE_SYSTEM,
            subscriber_id=subscriber_id,
            resource_type="subscriber",
            resource_id=str(subscriber_id),
            before_state={"status": before["subscription_status"], "plan_type": before["plan_type"]},
            after_state={"status": updated["subscription_status"], "plan_type": updated["plan_type"]},
            metadata={"transaction_id": transaction_id},
            session=session,
        )
        return updated

    async def mark_past_due(self, subscriber_id: int, reason: str, actor_id: Optional[str] = None,
                            actor_role: UserRole = UserRole.ROLE_SYSTEM) -> Dict[str, Any]:
        await self.get_subscriber(subscriber_id)
        updated = await self._transition(
            subscriber_id,
            SubscriptionStatus.PAST_DUE,
            sources_for(SubscriptionStatus.PAST_DUE),
            set_fields={"past_due_reason": reason, "past_due_at": clock.utcnow()},
        )
        if not updated:
            raise InvalidStateError(
                "Only an active subscription can become past due",
                error_code="INVALID_TRANSITION",
            )
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_PAST_DUE,
            actor_role=actor_role,
            actor_id=actor_id,
            subscriber_id=subscriber_id,
            resource_type="subscriber",
            resource_id=str(subscriber_id),
            reason_code=reason,
        )
        notification_service.notify(subscriber_id, EmailTemplateAlias.SUBSCRIPTION_PAST_DUE, reason=reason)
        return updated

    async def recover(self, subscriber_id: int, actor_id: Optional[str] = None,
                      actor_role: UserRole = UserRole.ROLE_SYSTEM) -> Dict[str, Any]:
        await self.get_subscriber(subscriber_id)
        updated = await self._transition(
            subscriber_id,
            SubscriptionStatus.ACTIVE,
            [SubscriptionStatus.PAST_DUE.value],
            set_fields={"past_due_reason": None, "past_due_at": None},
        )
        if not updated:
            raise InvalidStateError("Subscription is not past due", error_code="INVALID_TRANSITION")
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_RECOVERED,
            actor_role=actor_role,
            actor_id=actor_id,
            subscriber_id=subscriber_id,
            resource_type="subscriber",
            resource_id=str(subscriber_id),
        )
        return updated

    async def cancel(self, subscriber_id: int, reason: Optional[str] = None, actor_id: Optional[str] = None,
                     actor_role: UserRole = UserRole.ROLE_SUBSCRIBER) -> Dict[str, Any]:
        before = await self.get_subscriber(subscriber_id)
        reason = reason or "canceled_by_request"
        updated = await self._transition(
            subscriber_id,
            SubscriptionStatus.CANCELED,
            sources_for(SubscriptionStatus.CANCELED),
            set_fields={"canceled_reason": reason, "canceled_at": clock.utcnow()},
        )
        if not updated:
            raise InvalidStateError("Subscription is already canceled", error_code="INVALID_TRANSITION")
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CANCELED,
            actor_role=actor_role,
            actor_id=actor_id,
            subscriber_id=subscriber_id,
            resource_type="subscriber",
            resource_id=str(subscriber_id),
            before_state={"status": before["subscription_status"]},
            after_state={"status": updated["subscription_status"]},
            reason_code=reason,
        )
        notification_service.notify(subscriber_id, EmailTemplateAlias.SUBSCRIPTION_CANCELED, reason=reason)
        return updated

    async def has_pending_manual_payment(self, subscriber_id: int) -> bool:
        db = database.get_db()
        pending = await db.payment_transactions.count_documents({
            "subscriber_id": subscriber_id,
            "status": {"$in": [s.value for s in PENDING_REVIEW_STATUSES]},
        })
        return pending > 0

    async def expire_trial_if_due(self, subscriber: Dict[str, Any]) -> Dict[str, Any]:
        """Lazily cancel a lapsed trial; returns the current subscriber document."""
        if subscriber.get("subscription_status") != SubscriptionStatus.TRIALING.value:
            return subscriber
        ends = clock.ensure_utc(subscriber.get("trial_ends_at"))
        now = clock.utcnow()
        if ends is None or now <= ends:
            return subscriber

        subscriber_id = subscriber["subscriber_id"]
        # Proof waiting on an admin: do not lapse the trial until a decision is made
        if await self.has_pending_manual_payment(subscriber_id):
            logger.info(f"TRIAL_EXPIRY_DEFERRED subscriber_id={subscriber_id} reason=pending_review")
            return subscriber

        updated = await self._transition(
            subscriber_id,
            SubscriptionStatus.CANCELED,
            [SubscriptionStatus.TRIALING.value],
            set_fields={"canceled_reason": TRIAL_EXPIRED_REASON, "canceled_at": now},
            extra_filter={"trial_ends_at": {"$lt": now}},
        )
        if not updated:
            # Someone else transitioned first; return what is stored now
            return await self.get_subscriber(subscriber_id)

        await create_audit_log(
            action=AuditAction.TRIAL_EXPIRED,
            actor_role=UserRole.ROLE_SYSTEM,
            subscriber_id=subscriber_id,
            resource_type="subscriber",
            resource_id=str(subscriber_id),
            reason_code=TRIAL_EXPIRED_REASON,
        )
        notification_service.notify(subscriber_id, EmailTemplateAlias.TRIAL_EXPIRED)
        logger.info(f"TRIAL_EXPIRED subscriber_id={subscriber_id}")
        return updated

    async def load_current(self, subscriber_id: int) -> Dict[str, Any]:
        """Subscriber with lazy trial expiry applied."""
        subscriber = await self.get_subscriber(subscriber_id)
        return await self.expire_trial_if_due(subscriber)

    async def change_plan(self, subscriber_id: int, target: PlanType, actor_id: Optional[str] = None) -> Dict[str, Any]:
        """Switch plan without payment.

        Downgrades are checked against fresh usage and refused when any
        resource already exceeds the target plan's limit. Upgrades are free
        only during the trial; afterwards they go through a payment.
        """
        subscriber = await self.load_current(subscriber_id)
        status = subscriber["subscription_status"]
        if status not in (SubscriptionStatus.TRIALING.value, SubscriptionStatus.ACTIVE.value):
            raise InvalidStateError(
                f"Plan changes are not available while the subscription is {status}",
                error_code="SUBSCRIPTION_INACTIVE",
            )

        current_plan = await plan_catalog.get_plan(subscriber["plan_type"])
        target_plan = await plan_catalog.get_plan(target)
        if current_plan.plan_type == target_plan.plan_type:
            raise InvalidStateError(f"Already on the {target.value} plan", error_code="PLAN_UNCHANGED")
        if not target_plan.is_active:
            raise ValidationError(f"Plan {target.value} is not available", error_code="PLAN_INACTIVE")

        is_upgrade = target_plan.rank > current_plan.rank
        if is_upgrade and status != SubscriptionStatus.TRIALING.value:
            raise InvalidStateError(
                f"Upgrading to {target.value} requires a payment",
                error_code="UPGRADE_REQUIRES_PAYMENT",
                plan_type=target.value,
            )

        async with usage_lease(subscriber_id):
            if not is_upgrade:
                exceeding = []
                for resource in Resource:
                    usage = await resource_usage(subscriber_id, target_plan, resource)
                    if not usage.limit.is_unlimited and usage.current > usage.limit.value:
                        exceeding.append({
                            "resource": resource.value,
                            "current": usage.current,
                            "new_limit": usage.limit.value,
                        })
                if exceeding:
                    names = ", ".join(e["resource"] for e in exceeding)
                    raise InvalidStateError(
                        f"Current usage of {names} exceeds the {target.value} plan limits",
                        error_code="DOWNGRADE_EXCEEDS_USAGE",
                        exceeding=exceeding,
                    )

            updated = await self._transition(
                subscriber_id,
                SubscriptionStatus(status),
                [status],
                set_fields={"plan_type": target_plan.plan_type.value},
                extra_filter={"plan_type": current_plan.plan_type.value},
            )
        if not updated:
            raise ConcurrencyConflictError(f"Subscriber {subscriber_id} changed during plan change")

        await create_audit_log(
            action=AuditAction.PLAN_CHANGED,
            actor_role=UserRole.ROLE_SUBSCRIBER,
            actor_id=actor_id,
            subscriber_id=subscriber_id,
            resource_type="subscriber",
            resource_id=str(subscriber_id),
            before_state={"plan_type": current_plan.plan_type.value},
            after_state={"plan_type": target_plan.plan_type.value},
        )
        logger.info(
            f"PLAN_CHANGED subscriber_id={subscriber_id} from={current_plan.plan_type.value} "
            f"to={target_plan.plan_type.value}"
        )
        return updated

    async def get_status(self, subscriber_id: int) -> Dict[str, Any]:
        subscriber = await self.load_current(subscriber_id)
        status = subscriber["subscription_status"]
        return {
            "subscriber_id": subscriber_id,
            "status": status,
            "plan_type": subscriber["plan_type"],
            "trial_ends_at": subscriber.get("trial_ends_at"),
            "trial_days_left": trial_days_left(subscriber),
            "current_period_end": subscriber.get("current_period_end"),
            "canceled_reason": subscriber.get("canceled_reason"),
            "is_active": status in (SubscriptionStatus.TRIALING.value, SubscriptionStatus.ACTIVE.value),
            "entitlement_version": subscriber.get("entitlement_version", 0),
        }

    async def send_trial_reminders(self, dry_run: bool = False) -> Dict[str, Any]:
        """Email trialing subscribers whose trial ends in 3 or 1 day(s).

        Each threshold is sent at most once per subscriber: the mark in
        `trial_warnings_sent` is claimed with a conditional update before the
        email goes out. No subscription state changes here.
        """
        db = database.get_db()
        now = clock.utcnow()
        horizon = now + timedelta(days=max(TRIAL_REMINDER_DAYS))
        candidates = await db.subscribers.find(
            {
                "subscription_status": SubscriptionStatus.TRIALING.value,
                "trial_ends_at": {"$gt": now, "$lte": horizon},
            },
            {"_id": 0, "subscriber_id": 1, "subscription_status": 1, "trial_ends_at": 1, "trial_warnings_sent": 1},
        ).to_list(length=None)

        sent = []
        skipped = 0
        for subscriber in candidates:
            subscriber_id = subscriber["subscriber_id"]
            days_left = trial_days_left(subscriber)
            if days_left not in TRIAL_REMINDER_DAYS or days_left in (subscriber.get("trial_warnings_sent") or []):
                skipped += 1
                continue
            if dry_run:
                sent.append({"subscriber_id": subscriber_id, "days_left": days_left})
                continue

            claimed = await db.subscribers.update_one(
                {
                    "subscriber_id": subscriber_id,
                    "subscription_status": SubscriptionStatus.TRIALING.value,
                    "trial_warnings_sent": {"$ne": days_left},
                },
                {"$push": {"trial_warnings_sent": days_left}},
            )
            if not claimed.modified_count:
                skipped += 1
                continue

            await notification_service.deliver(
                subscriber_id, EmailTemplateAlias.TRIAL_ENDING, {"days_left": days_left}
            )
            await create_audit_log(
                action=AuditAction.TRIAL_WARNING_SENT,
                actor_role=UserRole.ROLE_SYSTEM,
                subscriber_id=subscriber_id,
                resource_type="subscriber",
                resource_id=str(subscriber_id),
                metadata={"days_left": days_left},
            )
            logger.info(f"TRIAL_WARNING_SENT subscriber_id={subscriber_id} days_left={days_left}")
            sent.append({"subscriber_id": subscriber_id, "days_left": days_left})

        return {"checked": len(candidates), "sent": sent, "skipped": skipped, "dry_run": dry_run}


subscription_service = SubscriptionService()
