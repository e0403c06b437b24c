"""
Tests for the entitlement evaluator: quota checks, consumption and the
lazy period rollover.
"""

import asyncio
from datetime import timedelta

import pytest

from app.domain.plans import PlanType
from app.domain.subscription import SubscriptionStatus, utcnow
from app.infrastructure.exceptions import QuotaExceededError
from app.infrastructure.services.billing_service import BillingService


TENANT_ID = "tenant-1"


@pytest.fixture
def billing_service(db_manager, mock_stripe_service) -> BillingService:
    return BillingService(stripe_service=mock_stripe_service, max_attempts=3)


class TestFreeTier:

    async def test_first_read_creates_free_record(self, billing_service, list_subscriptions):
        entitlements = await billing_service.get_entitlements(TENANT_ID)

        assert entitlements.plan == PlanType.FREE
        assert entitlements.units_limit == 1
        assert entitlements.units_remaining == 1
        assert len(await list_subscriptions()) == 1

    async def test_concurrent_first_reads_create_one_record(self, billing_service, list_subscriptions):
        await asyncio.gather(*(billing_service.get_or_create_subscription(TENANT_ID) for _ in range(5)))

        records = await list_subscriptions()
        assert len(records) == 1
        assert records[0].plan == PlanType.FREE

    async def test_free_quota_boundary(self, billing_service):
        usage = await billing_service.consume_unit(TENANT_ID)
        assert usage.units_used == 1
        assert usage.units_remaining == 0

        with pytest.raises(QuotaExceededError) as exc_info:
            await billing_service.consume_unit(TENANT_ID)

        error = exc_info.value
        assert error.plan == "free"
        assert error.cap == 1
        assert error.used == 1
        assert "lifetime limit" in error.message

    async def test_can_consume_does_not_consume(self, billing_service):
        check = await billing_service.can_consume_unit(TENANT_ID)
        again = await billing_service.can_consume_unit(TENANT_ID)

        assert check.allowed and again.allowed
        assert again.used == 0


class TestPaidQuota:

    async def test_consume_until_cap(self, billing_service, seed_paid):
        await seed_paid(units=9)

        usage = await billing_service.consume_unit(TENANT_ID)
        assert usage.units_used == 10
        assert usage.units_remaining == 0

        with pytest.raises(QuotaExceededError) as exc_info:
            await billing_service.consume_unit(TENANT_ID)
        assert exc_info.value.resets_at is not None
        assert "monthly limit of 10" in exc_info.value.message

    async def test_concurrent_consumption_never_exceeds_cap(self, billing_service, seed_paid):
        await seed_paid(units=5)

        results = await asyncio.gather(
            *(billing_service.consume_unit(TENANT_ID) for _ in range(8)),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 5
        assert all(isinstance(f, QuotaExceededError) for f in failures)

        entitlements = await billing_service.get_entitlements(TENANT_ID)
        assert entitlements.units_used == 10

    async def test_past_due_falls_back_to_free(self, billing_service, seed_paid):
        await seed_paid(status=SubscriptionStatus.PAST_DUE)

        check = await billing_service.can_consume_unit(TENANT_ID)

        # A past_due record is not active, so the tenant falls back to a free record.
        assert check.cap == 1


class TestLazyRollover:

    async def test_lapsed_period_resets_once(self, billing_service, seed_paid):
        now = utcnow().replace(microsecond=0)
        await seed_paid(period_start=now - timedelta(days=31), period_end=now - timedelta(hours=1), units=10)

        usage = await billing_service.consume_unit(TENANT_ID)
        assert usage.units_used == 1

        # A second check in the same lapsed period must not reset again.
        usage = await billing_service.consume_unit(TENANT_ID)
        assert usage.units_used == 2

    async def test_rollover_skipped_for_current_period(self, billing_service, seed_paid):
        seeded = await seed_paid(units=3)

        refreshed = await billing_service.rollover_if_needed(seeded)

        assert refreshed.units_created_this_period == 3
        assert refreshed.usage_reset_at is None


class TestBillingStatus:

    async def test_card_from_stored_payment(self, billing_service, seed_paid, mock_stripe_service):
        from app.domain.subscription import PaymentSnapshot
        from app.infrastructure.db.database import get_session_context
        from app.infrastructure.db.repositories import SubscriptionRepository

        seeded = await seed_paid()
        async with get_session_context() as session:
            await SubscriptionRepository(session).record_payment(
                seeded.id,
                PaymentSnapshot(invoice_id="in_1", status="paid", amount=1900,
                                card_brand="visa", card_last4="4242", card_exp_month=1, card_exp_year=2031),
            )

        status = await billing_service.get_billing_status(TENANT_ID)

        assert status.payment_method.last4 == "4242"
        mock_stripe_service.get_customer_payment_method.assert_not_called()

    async def test_card_from_gateway_when_not_stored(self, billing_service, seed_paid, mock_stripe_service):
        await seed_paid()
        mock_stripe_service.get_customer_payment_method.return_value = {
            "brand": "mastercard", "last4": "5555", "exp_month": 2, "exp_year": 2030,
        }

        status = await billing_service.get_billing_status(TENANT_ID)

        assert status.is_paid
        assert status.payment_method.brand == "mastercard"
        mock_stripe_service.get_customer_payment_method.assert_awaited_once_with("cus_1")

    async def test_free_tenant_has_no_card_lookup(self, billing_service, mock_stripe_service):
        status = await billing_service.get_billing_status(TENANT_ID)

        assert status.payment_method is None
        mock_stripe_service.get_customer_payment_method.assert_not_called()
