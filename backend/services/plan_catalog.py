"""Plan Catalog - plan definitions, limits and feature flags.

Plans live in the `plans` collection (seeded from PLAN_DEFINITIONS, then
admin-editable). Everything else in the engine treats them as read-only.

Limits are stored as a non-negative integer or the sentinel -1 for
"unlimited". The sentinel never leaves this module as a bare integer used in
arithmetic: it is wrapped in `Limit` at the boundary and only Limit methods
compare usage against it.

Plan Structure (defaults):
- basic: 14500.00 AOA/mo, 5 accounts, 1000 transactions per month
- premium: 29500.00 AOA/mo, unlimited, savings goals + loans + advanced reports
- enterprise: 74500.00 AOA/mo, unlimited, + team management + API access
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Any
import logging

from pydantic import BaseModel, ConfigDict, field_validator

from database import database
from models import PlanType, Resource, SubscriptionStatus, AuditAction, UserRole
from services.billing_errors import NotFoundError, InvalidStateError
from utils import clock
from utils.audit import create_audit_log
from utils.money import to_money, money_str

logger = logging.getLogger(__name__)

UNLIMITED = -1
DEFAULT_TRIAL_DAYS = 14
DEFAULT_CURRENCY = "AOA"


# ============================================================================
# LIMIT - tagged "finite N" / "unlimited" value
# ============================================================================
@dataclass(frozen=True)
class Limit:
    value: Optional[int] = None  # None means unlimited

    @classmethod
    def unlimited(cls) -> "Limit":
        return cls(None)

    @classmethod
    def finite(cls, value: int) -> "Limit":
        if value < 0:
            raise ValueError("finite limit must be >= 0")
        return cls(value)

    @classmethod
    def from_raw(cls, raw: Optional[int]) -> "Limit":
        """Build from a stored value; -1 (or a missing value) is unlimited."""
        if raw is None or int(raw) == UNLIMITED:
            return cls.unlimited()
        return cls.finite(int(raw))

    @property
    def is_unlimited(self) -> bool:
        return self.value is None

    def permits(self, current: int) -> bool:
        """True when one more item may be created on top of `current`."""
        if self.is_unlimited:
            return True
        return current < self.value

    def percentage(self, current: int) -> Optional[float]:
        if self.is_unlimited:
            return None
        if self.value == 0:
            return 100.0
        return round(current / self.value * 100, 2)

    def to_raw(self) -> int:
        return UNLIMITED if self.is_unlimited else self.value


# ============================================================================
# FEATURES
# ============================================================================
FEATURE_NAMES = {
    "savings_goals": "Savings Goals",
    "loans_and_debts": "Loans & Debts",
    "advanced_reports": "Advanced Reports",
    "team_management": "Team Management",
    "api_access": "API Access",
    "priority_support": "Priority Support",
    "bank_integrations": "Bank Integrations",
}

PLAN_RANKS = {
    PlanType.BASIC: 1,
    PlanType.PREMIUM: 2,
    PlanType.ENTERPRISE: 3,
}


# ============================================================================
# PLAN DEFINITIONS - seed values for the plans collection
# ============================================================================
PLAN_DEFINITIONS: Dict[PlanType, Dict[str, Any]] = {
    PlanType.BASIC: {
        "plan_type": "basic",
        "name": "Básico",
        "description": "Ideal para uso pessoal",
        "price": "14500.00",
        "currency": DEFAULT_CURRENCY,
        "rank": 1,
        "max_accounts": 5,
        "max_transactions_per_month": 1000,
        "trial_days": DEFAULT_TRIAL_DAYS,
        "features": {
            "savings_goals": False,
            "loans_and_debts": False,
            "advanced_reports": False,
            "team_management": False,
            "api_access": False,
            "priority_support": False,
            "bank_integrations": False,
        },
        "is_active": True,
    },
    PlanType.PREMIUM: {
        "plan_type": "premium",
        "name": "Premium",
        "description": "Para usuários avançados",
        "price": "29500.00",
        "currency": DEFAULT_CURRENCY,
        "rank": 2,
        "max_accounts": UNLIMITED,
        "max_transactions_per_month": UNLIMITED,
        "trial_days": DEFAULT_TRIAL_DAYS,
        "features": {
            "savings_goals": True,
            "loans_and_debts": True,
            "advanced_reports": True,
            "team_management": False,
            "api_access": False,
            "priority_support": True,
            "bank_integrations": False,
        },
        "is_active": True,
    },
    PlanType.ENTERPRISE: {
        "plan_type": "enterprise",
        "name": "Empresarial",
        "description": "Para empresas e equipas",
        "price": "74500.00",
        "currency": DEFAULT_CURRENCY,
        "rank": 3,
        "max_accounts": UNLIMITED,
        "max_transactions_per_month": UNLIMITED,
        "trial_days": DEFAULT_TRIAL_DAYS,
        "features": {
            "savings_goals": True,
            "loans_and_debts": True,
            "advanced_reports": True,
            "team_management": True,
            "api_access": True,
            "priority_support": True,
            "bank_integrations": True,
        },
        "is_active": True,
    },
}


class Plan(BaseModel):
    model_config = ConfigDict(extra="ignore")

    plan_type: PlanType
    name: str
    description: Optional[str] = None
    price: Decimal
    currency: str = DEFAULT_CURRENCY
    rank: int
    features: Dict[str, bool] = {}
    max_accounts: int = UNLIMITED
    max_transactions_per_month: int = UNLIMITED
    trial_days: int = DEFAULT_TRIAL_DAYS
    is_active: bool = True

    @field_validator("price", mode="before")
    @classmethod
    def _parse_price(cls, v):
        return to_money(v)

    def limit_for(self, resource: Resource) -> Limit:
        if resource == Resource.ACCOUNTS:
            return Limit.from_raw(self.max_accounts)
        return Limit.from_raw(self.max_transactions_per_month)

    def has_feature(self, feature: str) -> bool:
        return bool(self.features.get(feature, False))

    def to_public(self) -> Dict[str, Any]:
        return {
            "plan_type": self.plan_type.value,
            "name": self.name,
            "description": self.description,
            "price": money_str(self.price),
            "currency": self.currency,
            "rank": self.rank,
            "features": dict(self.features),
            "limits": {
                "max_accounts": self.max_accounts,
                "max_transactions_per_month": self.max_transactions_per_month,
            },
            "trial_days": self.trial_days,
        }


def feature_superset_violations(plans: List[Plan]) -> List[str]:
    """Describe every place a higher-ranked plan drops a lower plan's feature."""
    violations = []
    ordered = sorted(plans, key=lambda p: p.rank)
    for i, lower in enumerate(ordered):
        for higher in ordered[i + 1:]:
            for feature, enabled in lower.features.items():
                if enabled and not higher.has_feature(feature):
                    violations.append(
                        f"{higher.plan_type.value} lacks '{feature}' offered by {lower.plan_type.value}"
                    )
    return violations


class PlanCatalogService:
    """Read access to plans plus admin edits."""

    async def get_plan(self, plan_type, session=None) -> Plan:
        db = database.get_db()
        key = plan_type.value if isinstance(plan_type, PlanType) else str(plan_type)
        doc = await db.plans.find_one({"plan_type": key}, {"_id": 0}, session=session)
        if not doc:
            raise NotFoundError(f"Plan not found: {key}", error_code="PLAN_NOT_FOUND")
        return Plan(**doc)

    async def list_plans(self, include_inactive: bool = False) -> List[Plan]:
        db = database.get_db()
        query = {} if include_inactive else {"is_active": True}
        docs = await db.plans.find(query, {"_id": 0}).sort("rank", 1).to_list(length=50)
        return [Plan(**d) for d in docs]

    async def minimum_plan_for_feature(self, feature: str) -> Optional[Plan]:
        for plan in await self.list_plans():
            if plan.has_feature(feature):
                return plan
        return None

    async def verify_feature_ordering(self) -> List[str]:
        """Log (do not enforce) feature-superset violations across active plans."""
        violations = feature_superset_violations(await self.list_plans())
        for v in violations:
            logger.warning(f"PLAN_CATALOG_FEATURE_ORDERING {v}")
        return violations

    async def update_plan(self, plan_type: PlanType, updates: Dict[str, Any], actor_id: str) -> Plan:
        db = database.get_db()
        before = await self.get_plan(plan_type)

        if updates.get("is_active") is False:
            in_use = await db.subscribers.count_documents({
                "plan_type": plan_type.value,
                "subscription_status": {"$ne": SubscriptionStatus.CANCELED.value},
            })
            if in_use:
                raise InvalidStateError(
                    f"Plan {plan_type.value} is referenced by {in_use} subscriber(s) and cannot be deactivated",
                    error_code="PLAN_IN_USE",
                )

        changes = {k: v for k, v in updates.items() if v is not None}
        if "price" in changes:
            changes["price"] = money_str(changes["price"])
        if "features" in changes:
            merged = dict(before.features)
            merged.update(changes["features"])
            changes["features"] = merged
        changes["updated_at"] = clock.utcnow()

        await db.plans.update_one({"plan_type": plan_type.value}, {"$set": changes})
        after = await self.get_plan(plan_type)

        await create_audit_log(
            action=AuditAction.PLAN_UPDATED,
            actor_role=UserRole.ROLE_ADMIN,
            actor_id=actor_id,
            resource_type="plan",
            resource_id=plan_type.value,
            before_state=before.to_public(),
            after_state=after.to_public(),
        )
        await self.verify_feature_ordering()
        return after


plan_catalog = PlanCatalogService()
