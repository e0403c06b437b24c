"""
Unit tests for entitlement rules.

Pure functions over a Subscription; no database.
"""

from datetime import timedelta

import pytest

from app.domain.entitlements import (
    build_entitlements,
    evaluate_quota,
    is_active,
    is_paid,
    needs_rollover,
    units_remaining,
)
from app.domain.plans import PlanType
from app.domain.subscription import (
    Subscription,
    SubscriptionStatus,
    free_plan_period_end,
    utcnow,
)


NOW = utcnow().replace(microsecond=0)


def make_subscription(**overrides) -> Subscription:
    values = {
        "id": "00000000-0000-0000-0000-000000000001",
        "tenant_id": "tenant-1",
        "plan": PlanType.STARTER,
        "status": SubscriptionStatus.ACTIVE,
        "current_period_start": NOW - timedelta(days=5),
        "current_period_end": NOW + timedelta(days=25),
        "started_at": NOW - timedelta(days=5),
    }
    values.update(overrides)
    return Subscription(**values)


def make_free(**overrides) -> Subscription:
    values = {
        "plan": PlanType.FREE,
        "current_period_start": NOW,
        "current_period_end": free_plan_period_end(NOW),
    }
    values.update(overrides)
    return make_subscription(**values)


class TestActiveAndPaid:

    def test_active_requires_future_period_end(self):
        assert is_active(make_subscription(), NOW)
        assert not is_active(make_subscription(current_period_end=NOW - timedelta(seconds=1)), NOW)

    def test_non_active_status_is_not_active(self):
        assert not is_active(make_subscription(status=SubscriptionStatus.PAST_DUE), NOW)

    def test_free_is_active_but_not_paid(self):
        free = make_free()
        assert is_active(free, NOW)
        assert not is_paid(free, NOW)

    def test_paid_plan_is_paid(self):
        assert is_paid(make_subscription(), NOW)

    def test_free_period_end_is_far_future(self):
        assert free_plan_period_end(NOW).year == NOW.year + 100


class TestRollover:

    def test_free_never_rolls_over(self):
        free = make_free(current_period_end=NOW - timedelta(days=1))
        assert not needs_rollover(free, NOW)

    def test_lapsed_paid_period_needs_rollover(self):
        lapsed = make_subscription(current_period_end=NOW - timedelta(hours=1))
        assert needs_rollover(lapsed, NOW)

    def test_rollover_marker_prevents_second_reset(self):
        period_end = NOW - timedelta(hours=1)
        lapsed = make_subscription(current_period_end=period_end, usage_reset_at=NOW - timedelta(minutes=5))
        assert not needs_rollover(lapsed, NOW)

    def test_marker_from_previous_period_does_not_block(self):
        period_end = NOW - timedelta(hours=1)
        lapsed = make_subscription(current_period_end=period_end, usage_reset_at=period_end - timedelta(days=30))
        assert needs_rollover(lapsed, NOW)

    def test_current_period_does_not_roll_over(self):
        assert not needs_rollover(make_subscription(), NOW)


class TestEvaluateQuota:

    def test_free_allows_first_unit(self):
        check = evaluate_quota(make_free())
        assert check.allowed
        assert check.cap == 1

    def test_free_lifetime_cap_reason(self):
        check = evaluate_quota(make_free(units_created_this_period=1))
        assert not check.allowed
        assert "lifetime limit of 1" in check.reason
        assert check.resets_at is None

    def test_paid_monthly_cap_reason_names_reset_date(self):
        sub = make_subscription(units_created_this_period=10)
        check = evaluate_quota(sub)
        assert not check.allowed
        assert "monthly limit of 10" in check.reason
        assert sub.current_period_end.date().isoformat() in check.reason
        assert check.resets_at == sub.current_period_end

    @pytest.mark.parametrize(
        "status",
        [SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED, SubscriptionStatus.INCOMPLETE],
    )
    def test_non_active_status_denied(self, status):
        check = evaluate_quota(make_subscription(status=status))
        assert not check.allowed
        assert status.value in check.reason

    def test_units_remaining_never_negative(self):
        assert units_remaining(make_subscription(units_created_this_period=12)) == 0


class TestBuildEntitlements:

    def test_paid_snapshot(self):
        sub = make_subscription(units_created_this_period=4, cancel_at_period_end=True)
        ent = build_entitlements(sub, NOW)
        assert ent.plan == PlanType.STARTER
        assert ent.is_paid
        assert ent.units_used == 4
        assert ent.units_limit == 10
        assert ent.units_remaining == 6
        assert ent.next_billing_date == sub.current_period_end
        assert ent.cancel_at_period_end

    def test_free_snapshot_has_no_billing_date(self):
        ent = build_entitlements(make_free(), NOW)
        assert not ent.is_paid
        assert ent.units_limit == 1
        assert ent.next_billing_date is None

    def test_past_due_snapshot_hides_limits(self):
        ent = build_entitlements(make_subscription(status=SubscriptionStatus.PAST_DUE), NOW)
        assert ent.status == SubscriptionStatus.PAST_DUE
        assert ent.units_limit is None
        assert ent.units_remaining is None
        assert not ent.is_paid
