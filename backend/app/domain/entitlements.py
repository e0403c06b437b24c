"""
Entitlement Rules

Pure functions answering "is this tenant active/paid?" and "may this tenant
consume one more lead magnet right now?". No I/O; the billing service is
responsible for persisting the lazy rollover before asking.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from app.domain.plans import PlanType, QuotaKind, get_plan_limits
from app.domain.subscription import (
    Entitlements,
    Subscription,
    SubscriptionStatus,
    utcnow,
)


@dataclass(frozen=True)
class QuotaCheck:
    """Outcome of a quota evaluation."""
    allowed: bool
    cap: int
    used: int
    reason: Optional[str] = None
    resets_at: Optional[datetime] = None


def is_active(subscription: Subscription, now: Optional[datetime] = None) -> bool:
    """Active status with a period end still in the future."""
    now = now or utcnow()
    return (
        subscription.status == SubscriptionStatus.ACTIVE
        and subscription.current_period_end > now
    )


def is_paid(subscription: Subscription, now: Optional[datetime] = None) -> bool:
    """Paid plan and currently active."""
    return subscription.plan != PlanType.FREE and is_active(subscription, now)


def needs_rollover(subscription: Subscription, now: Optional[datetime] = None) -> bool:
    """
    True when a paid period has lapsed and the usage counter has not yet
    been reset for that boundary.

    Free records never roll over: their usage is a lifetime count.
    """
    if subscription.plan == PlanType.FREE:
        return False

    now = now or utcnow()
    if subscription.current_period_end > now:
        return False

    reset_at = subscription.usage_reset_at
    return reset_at is None or reset_at < subscription.current_period_end


def units_limit(subscription: Subscription) -> int:
    """Lead magnet cap that applies to the record's plan."""
    return get_plan_limits(subscription.plan).lead_magnets_cap


def units_remaining(subscription: Subscription) -> int:
    return max(0, units_limit(subscription) - subscription.units_created_this_period)


def evaluate_quota(subscription: Subscription) -> QuotaCheck:
    """
    Decide whether one more unit may be consumed.

    Callers must apply the lazy rollover first, otherwise a paid tenant
    whose renewal webhook is late stays stuck at the previous period's count.
    """
    limits = get_plan_limits(subscription.plan)
    cap = limits.lead_magnets_cap
    used = subscription.units_created_this_period

    if subscription.status != SubscriptionStatus.ACTIVE:
        return QuotaCheck(
            allowed=False,
            cap=cap,
            used=used,
            reason=f"Your subscription is {subscription.status.value}. "
                   f"Update your billing details to keep creating lead magnets.",
        )

    if used < cap:
        return QuotaCheck(allowed=True, cap=cap, used=used)

    if limits.quota_kind == QuotaKind.LIFETIME:
        return QuotaCheck(
            allowed=False,
            cap=cap,
            used=used,
            reason=f"You've reached your lifetime limit of {cap} free lead magnets. "
                   f"Upgrade to create more!",
        )

    resets_at = subscription.current_period_end
    return QuotaCheck(
        allowed=False,
        cap=cap,
        used=used,
        reason=f"You've reached your monthly limit of {cap} lead magnets. "
               f"Your limit resets on {resets_at.date().isoformat()}.",
        resets_at=resets_at,
    )


def build_entitlements(
    subscription: Subscription,
    now: Optional[datetime] = None,
) -> Entitlements:
    """Snapshot for UI and billing-status surfaces."""
    paid = is_paid(subscription, now)
    current = subscription.status == SubscriptionStatus.ACTIVE

    return Entitlements(
        plan=subscription.plan,
        status=subscription.status,
        units_used=subscription.units_created_this_period,
        units_limit=units_limit(subscription) if current else None,
        units_remaining=units_remaining(subscription) if current else None,
        next_billing_date=subscription.current_period_end if paid else None,
        cancel_at_period_end=subscription.cancel_at_period_end,
        is_paid=paid,
    )
