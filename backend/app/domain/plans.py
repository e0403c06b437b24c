"""
Plan Catalog

Static catalog of billing plans and their quotas. Not persisted per tenant:
a subscription only stores the plan name, the limits live here.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from app.infrastructure.exceptions import ValidationError


class PlanType(str, Enum):
    """Billing plan tiers."""
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    AGENCY = "agency"


class QuotaKind(str, Enum):
    """How the lead magnet cap is counted."""
    LIFETIME = "lifetime"
    PER_PERIOD = "per_period"


@dataclass(frozen=True)
class PlanLimits:
    """Quota definition for a single plan. ``None`` means unlimited."""
    plan: PlanType
    rank: int
    quota_kind: QuotaKind
    lead_magnets_cap: int
    brands_cap: Optional[int]
    leads_per_magnet: Optional[int]


PLAN_LIMITS: dict[PlanType, PlanLimits] = {
    PlanType.FREE: PlanLimits(
        plan=PlanType.FREE,
        rank=0,
        quota_kind=QuotaKind.LIFETIME,
        lead_magnets_cap=1,
        brands_cap=1,
        leads_per_magnet=100,
    ),
    PlanType.STARTER: PlanLimits(
        plan=PlanType.STARTER,
        rank=1,
        quota_kind=QuotaKind.PER_PERIOD,
        lead_magnets_cap=10,
        brands_cap=1,
        leads_per_magnet=None,
    ),
    PlanType.PRO: PlanLimits(
        plan=PlanType.PRO,
        rank=2,
        quota_kind=QuotaKind.PER_PERIOD,
        lead_magnets_cap=30,
        brands_cap=3,
        leads_per_magnet=None,
    ),
    PlanType.AGENCY: PlanLimits(
        plan=PlanType.AGENCY,
        rank=3,
        quota_kind=QuotaKind.PER_PERIOD,
        lead_magnets_cap=100,
        brands_cap=None,
        leads_per_magnet=None,
    ),
}


def get_plan_limits(plan: PlanType) -> PlanLimits:
    """Get the quota definition for a plan."""
    return PLAN_LIMITS[plan]


def paid_plans() -> list[PlanType]:
    """Paid tiers in ascending order."""
    return sorted(
        (plan for plan in PLAN_LIMITS if plan != PlanType.FREE),
        key=lambda plan: PLAN_LIMITS[plan].rank,
    )


def is_upgrade(current: PlanType, target: PlanType) -> bool:
    """True if ``target`` ranks above ``current``."""
    return PLAN_LIMITS[target].rank > PLAN_LIMITS[current].rank


def parse_plan(value: str, paid_only: bool = False) -> PlanType:
    """
    Parse a plan name coming from a request or gateway metadata.

    Raises:
        ValidationError: unknown plan, or free plan when ``paid_only``
    """
    try:
        plan = PlanType(str(value).lower())
    except ValueError:
        raise ValidationError(
            f"Invalid plan '{value}'",
            details={"allowed": [p.value for p in PLAN_LIMITS]},
        )

    if paid_only and plan == PlanType.FREE:
        raise ValidationError(
            "Invalid plan. Must be starter, pro, or agency.",
            details={"allowed": [p.value for p in paid_plans()]},
        )

    return plan
