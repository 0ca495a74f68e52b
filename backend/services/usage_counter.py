"""Usage Counter - how much of each limited resource a subscriber consumes.

accounts: every account the subscriber owns, any type.
transactions: finance transactions whose server-side created_at falls in the
current calendar month (UTC). The monthly reset is implicit in the window; no
reset job exists.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from database import database
from models import Resource
from services.plan_catalog import Plan, Limit
from utils import clock


def month_window(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """[first instant of this month, first instant of next month) in UTC."""
    now = now or clock.utcnow()
    start = now.astimezone(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


@dataclass(frozen=True)
class ResourceUsage:
    resource: Resource
    current: int
    limit: Limit

    @property
    def percentage(self) -> Optional[float]:
        return self.limit.percentage(self.current)

    def to_dict(self) -> Dict:
        return {
            "current": self.current,
            "limit": self.limit.to_raw(),
            "unlimited": self.limit.is_unlimited,
            "percentage": self.percentage,
        }


@dataclass(frozen=True)
class SubscriberUsage:
    accounts: ResourceUsage
    transactions: ResourceUsage

    def for_resource(self, resource: Resource) -> ResourceUsage:
        return self.accounts if resource == Resource.ACCOUNTS else self.transactions


async def count_resource(subscriber_id: int, resource: Resource, session=None, now: Optional[datetime] = None) -> int:
    db = database.get_db()
    if resource == Resource.ACCOUNTS:
        return await db.accounts.count_documents({"subscriber_id": subscriber_id}, session=session)
    start, end = month_window(now)
    return await db.transactions.count_documents(
        {"subscriber_id": subscriber_id, "created_at": {"$gte": start, "$lt": end}},
        session=session,
    )


async def resource_usage(subscriber_id: int, plan: Plan, resource: Resource, session=None) -> ResourceUsage:
    current = await count_resource(subscriber_id, resource, session=session)
    return ResourceUsage(resource=resource, current=current, limit=plan.limit_for(resource))


async def usage(subscriber_id: int, plan: Plan, session=None) -> SubscriberUsage:
    return SubscriberUsage(
        accounts=await resource_usage(subscriber_id, plan, Resource.ACCOUNTS, session=session),
        transactions=await resource_usage(subscriber_id, plan, Resource.TRANSACTIONS, session=session),
    )
