"""Entitlement Evaluator - what a subscriber may do right now.

An EntitlementSnapshot is computed fresh per request (plan + status + usage)
and handed to consumers explicitly; nothing caches subscriber state on the
server. Clients may cache the HTTP response for a few minutes and should drop
it when `entitlement_version` changes.

Access level by subscription status:
- ENABLED: trialing, active (create within limits, plan features)
- LIMITED: past_due (read-only)
- DISABLED: canceled
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from database import database
from models import AuditAction, Resource, SubscriptionStatus, UserRole
from services.billing_errors import (
    FeatureNotAvailableError,
    InvalidStateError,
    LimitExceededError,
)
from services.plan_catalog import FEATURE_NAMES, Plan, plan_catalog
from services.subscription_service import subscription_service, trial_days_left
from services.usage_counter import SubscriberUsage, count_resource, usage
from services.usage_lease import usage_lease
from utils import clock
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

# A resource is "near" its limit from this utilisation on (system-wide)
NEAR_LIMIT_PERCENTAGE = 80.0


class AccessLevel(str, Enum):
    ENABLED = "ENABLED"
    LIMITED = "LIMITED"
    DISABLED = "DISABLED"


ACCESS_BY_STATUS = {
    SubscriptionStatus.TRIALING.value: AccessLevel.ENABLED,
    SubscriptionStatus.ACTIVE.value: AccessLevel.ENABLED,
    SubscriptionStatus.PAST_DUE.value: AccessLevel.LIMITED,
    SubscriptionStatus.CANCELED.value: AccessLevel.DISABLED,
}


def access_level_for(status: Optional[str]) -> AccessLevel:
    return ACCESS_BY_STATUS.get(status or "", AccessLevel.DISABLED)


@dataclass(frozen=True)
class EntitlementSnapshot:
    subscriber_id: int
    status: str
    plan: Plan
    usage: SubscriberUsage
    access_level: AccessLevel
    entitlement_version: int
    trial_ends_at: Optional[datetime] = None
    trial_days_left: int = 0
    evaluated_at: datetime = field(default_factory=lambda: clock.utcnow())

    def can_create(self, resource: Resource) -> bool:
        if self.access_level != AccessLevel.ENABLED:
            return False
        resource_usage = self.usage.for_resource(resource)
        return resource_usage.limit.permits(resource_usage.current)

    def has_feature(self, feature: str) -> bool:
        return self.access_level == AccessLevel.ENABLED and self.plan.has_feature(feature)

    def limits_view(self) -> Dict[str, Any]:
        view = {}
        for resource in Resource:
            resource_usage = self.usage.for_resource(resource)
            item = resource_usage.to_dict()
            pct = item["percentage"]
            item["can_create"] = self.can_create(resource)
            item["near_limit"] = pct is not None and pct >= NEAR_LIMIT_PERCENTAGE
            view[resource.value] = item
        return view

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscriber_id": self.subscriber_id,
            "status": self.status,
            "access_level": self.access_level.value,
            "plan": self.plan.to_public(),
            "trial_ends_at": self.trial_ends_at.isoformat() if self.trial_ends_at else None,
            "trial_days_left": self.trial_days_left,
            "usage": self.limits_view(),
            "features": {k: self.has_feature(k) for k in self.plan.features},
            "entitlement_version": self.entitlement_version,
            "evaluated_at": self.evaluated_at.isoformat(),
        }


class EntitlementService:

    async def evaluate(self, subscriber_id: int) -> EntitlementSnapshot:
        subscriber = await subscription_service.load_current(subscriber_id)
        plan = await plan_catalog.get_plan(subscriber["plan_type"])
        subscriber_usage = await usage(subscriber_id, plan)
        status = subscriber["subscription_status"]
        return EntitlementSnapshot(
            subscriber_id=subscriber_id,
            status=status,
            plan=plan,
            usage=subscriber_usage,
            access_level=access_level_for(status),
            entitlement_version=subscriber.get("entitlement_version", 0),
            trial_ends_at=clock.ensure_utc(subscriber.get("trial_ends_at")),
            trial_days_left=trial_days_left(subscriber),
        )

    async def can_create(self, subscriber_id: int, resource: Resource) -> bool:
        snapshot = await self.evaluate(subscriber_id)
        return snapshot.can_create(resource)

    async def limits_view(self, subscriber_id: int) -> Dict[str, Any]:
        snapshot = await self.evaluate(subscriber_id)
        return {"plan_type": snapshot.plan.plan_type.value, **snapshot.limits_view()}

    async def check_feature(self, snapshot: EntitlementSnapshot, feature: str) -> Tuple[bool, Optional[str]]:
        """Return (allowed, upgrade_message)."""
        if snapshot.has_feature(feature):
            return True, None
        name = FEATURE_NAMES.get(feature, feature)
        if snapshot.access_level != AccessLevel.ENABLED:
            return False, f"{name} is unavailable while the subscription is {snapshot.status}"
        minimum = await plan_catalog.minimum_plan_for_feature(feature)
        if minimum is None:
            return False, f"{name} is not offered on any plan"
        return False, f"{name} requires the {minimum.name} plan or higher"

    async def require_feature(self, subscriber_id: int, feature: str) -> EntitlementSnapshot:
        snapshot = await self.evaluate(subscriber_id)
        allowed, message = await self.check_feature(snapshot, feature)
        if not allowed:
            minimum = await plan_catalog.minimum_plan_for_feature(feature)
            raise FeatureNotAvailableError(
                feature=feature,
                current_plan=snapshot.plan.plan_type.value,
                required_plan=minimum.plan_type.value if minimum else None,
                message=message,
            )
        return snapshot

    async def guarded_create(self, subscriber_id: int, resource: Resource, document: Dict[str, Any]) -> Dict[str, Any]:
        """Insert `document` into the resource's collection only if the plan allows one more.

        The check and the insert run under the subscriber's usage lease, and
        plan and status are read inside it. Plan changes take the same lease,
        so a downgrade cannot land between the check and the insert.
        """
        async with usage_lease(subscriber_id):
            snapshot = await self.evaluate(subscriber_id)
            if snapshot.access_level != AccessLevel.ENABLED:
                raise InvalidStateError(
                    f"Cannot create {resource.value} while the subscription is {snapshot.status}",
                    error_code="SUBSCRIPTION_INACTIVE",
                    status=snapshot.status,
                )

            limit = snapshot.plan.limit_for(resource)
            if limit.is_unlimited:
                return await self._insert(subscriber_id, resource, document)

            current = await count_resource(subscriber_id, resource)
            if not limit.permits(current):
                logger.info(
                    f"LIMIT_EXCEEDED subscriber_id={subscriber_id} resource={resource.value} "
                    f"current={current} limit={limit.value}"
                )
                await create_audit_log(
                    action=AuditAction.LIMIT_EXCEEDED,
                    actor_role=UserRole.ROLE_SUBSCRIBER,
                    actor_id=str(subscriber_id),
                    subscriber_id=subscriber_id,
                    resource_type=resource.value,
                    metadata={"current": current, "limit": limit.value},
                )
                raise LimitExceededError(
                    resource=resource.value,
                    current=current,
                    limit=limit.value,
                    plan_type=snapshot.plan.plan_type.value,
                )
            return await self._insert(subscriber_id, resource, document)

    async def _insert(self, subscriber_id: int, resource: Resource, document: Dict[str, Any]) -> Dict[str, Any]:
        db = database.get_db()
        doc = dict(document)
        doc["subscriber_id"] = subscriber_id
        # Server-side timestamp; the monthly window counts on this, never on client input
        doc["created_at"] = clock.utcnow()
        await db[resource.value].insert_one(doc)
        doc.pop("_id", None)
        return doc


entitlement_service = EntitlementService()
