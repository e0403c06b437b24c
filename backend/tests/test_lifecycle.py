"""
Tests for tenant-initiated lifecycle operations.

Stripe is mocked; the local store is a temporary SQLite database.
"""

from datetime import datetime, timezone

import pytest

from app.domain.plans import PlanType
from app.infrastructure.db.database import get_session_context
from app.infrastructure.db.repositories import SubscriptionRepository
from app.infrastructure.exceptions import (
    ConflictError,
    ExternalGatewayError,
    NotFoundError,
    ValidationError,
)
from app.infrastructure.services.subscription_lifecycle import SubscriptionLifecycleService


TENANT_ID = "tenant-1"


@pytest.fixture
def lifecycle(db_manager, mock_stripe_service) -> SubscriptionLifecycleService:
    return SubscriptionLifecycleService(mock_stripe_service)


def gateway_failure(operation: str) -> ExternalGatewayError:
    return ExternalGatewayError("Stripe timed out", operation=operation)


class TestCheckout:

    async def test_creates_customer_once(self, lifecycle, tenant, get_tenant, mock_stripe_service):
        response = await lifecycle.start_checkout(TENANT_ID, "starter")

        assert response.session_id == "cs_test_1"
        assert response.url.startswith("https://checkout.stripe.com/")
        mock_stripe_service.create_customer.assert_awaited_once_with(TENANT_ID, "owner@acme.test", "Acme")
        assert (await get_tenant()).stripe_customer_id == "cus_new"

        await lifecycle.start_checkout(TENANT_ID, "pro")
        assert mock_stripe_service.create_customer.await_count == 1

    async def test_redirect_urls(self, lifecycle, tenant, mock_stripe_service):
        await lifecycle.start_checkout(TENANT_ID, PlanType.AGENCY)

        kwargs = mock_stripe_service.create_checkout_session.call_args.kwargs
        assert kwargs["plan"] == PlanType.AGENCY
        assert kwargs["success_url"].endswith("&success=true&session_id={CHECKOUT_SESSION_ID}")
        assert kwargs["cancel_url"].endswith("&canceled=true")

    async def test_checkout_does_not_create_records(self, lifecycle, tenant, list_subscriptions):
        await lifecycle.start_checkout(TENANT_ID, "starter")

        assert await list_subscriptions() == []

    async def test_free_plan_rejected(self, lifecycle, tenant):
        with pytest.raises(ValidationError):
            await lifecycle.start_checkout(TENANT_ID, "free")

    async def test_already_paying_conflicts(self, lifecycle, tenant, seed_paid):
        await seed_paid(plan=PlanType.PRO)

        with pytest.raises(ConflictError, match="already have an active pro subscription"):
            await lifecycle.start_checkout(TENANT_ID, "agency")

    async def test_unknown_tenant(self, lifecycle):
        with pytest.raises(NotFoundError, match="Tenant not found"):
            await lifecycle.start_checkout("ghost", "starter")


class TestCancelReactivate:

    async def test_cancel_then_reactivate(self, lifecycle, seed_paid, mock_stripe_service):
        seeded = await seed_paid()

        canceled = await lifecycle.cancel(TENANT_ID, reason="too expensive")
        assert canceled.cancel_at_period_end is True
        assert canceled.current_period_end == seeded.current_period_end
        mock_stripe_service.cancel_subscription.assert_awaited_once_with("sub_1")

        reactivated = await lifecycle.reactivate(TENANT_ID)
        assert reactivated.cancel_at_period_end is False
        assert reactivated.message == "Subscription has been reactivated successfully"

        async with get_session_context() as session:
            stored = await SubscriptionRepository(session).get_by_id(seeded.id)
        assert stored.status.value == "active"
        assert stored.cancel_reason is None
        assert stored.version == seeded.version + 2

    async def test_cancel_keeps_reason(self, lifecycle, seed_paid):
        seeded = await seed_paid()

        await lifecycle.cancel(TENANT_ID)

        async with get_session_context() as session:
            stored = await SubscriptionRepository(session).get_by_id(seeded.id)
        assert stored.cancel_reason == "user_requested"
        assert stored.status.value == "active"

    async def test_double_cancel_conflicts(self, lifecycle, seed_paid):
        await seed_paid()
        await lifecycle.cancel(TENANT_ID)

        with pytest.raises(ConflictError, match="already scheduled"):
            await lifecycle.cancel(TENANT_ID)

    async def test_reactivate_without_cancel_conflicts(self, lifecycle, seed_paid):
        await seed_paid()

        with pytest.raises(ConflictError, match="not scheduled"):
            await lifecycle.reactivate(TENANT_ID)

    async def test_free_tenant_cannot_cancel(self, lifecycle):
        from app.infrastructure.services.billing_service import BillingService

        await BillingService(max_attempts=3).get_or_create_subscription(TENANT_ID)

        with pytest.raises(NotFoundError, match="No active subscription found"):
            await lifecycle.cancel(TENANT_ID)

    async def test_gateway_failure_leaves_record_unchanged(self, lifecycle, seed_paid, mock_stripe_service):
        seeded = await seed_paid()
        mock_stripe_service.cancel_subscription.side_effect = gateway_failure("cancel_subscription")

        with pytest.raises(ExternalGatewayError):
            await lifecycle.cancel(TENANT_ID)

        async with get_session_context() as session:
            stored = await SubscriptionRepository(session).get_by_id(seeded.id)
        assert stored.cancel_at_period_end is False
        assert stored.version == seeded.version


class TestChangePlan:

    async def test_upgrade(self, lifecycle, seed_paid, mock_stripe_service):
        await seed_paid(plan=PlanType.STARTER, units=4)

        response = await lifecycle.change_plan(TENANT_ID, "pro")

        assert response.plan == PlanType.PRO
        assert response.message == "Successfully upgraded to pro plan"
        mock_stripe_service.change_plan.assert_awaited_once_with("sub_1", PlanType.PRO)

        async with get_session_context() as session:
            stored = await SubscriptionRepository(session).find_active_by_tenant(TENANT_ID)
        assert stored.stripe_price_id == "price_pro"
        assert stored.units_created_this_period == 4

    async def test_downgrade_message(self, lifecycle, seed_paid):
        await seed_paid(plan=PlanType.AGENCY)

        response = await lifecycle.change_plan(TENANT_ID, "starter")

        assert response.message == "Successfully downgraded to starter plan"

    async def test_same_plan_conflicts(self, lifecycle, seed_paid, mock_stripe_service):
        await seed_paid(plan=PlanType.PRO)

        with pytest.raises(ConflictError, match="already on the pro plan"):
            await lifecycle.change_plan(TENANT_ID, "pro")
        mock_stripe_service.change_plan.assert_not_called()

    async def test_no_subscription(self, lifecycle):
        with pytest.raises(NotFoundError, match="Please subscribe first"):
            await lifecycle.change_plan(TENANT_ID, "pro")

    async def test_gateway_failure_keeps_plan(self, lifecycle, seed_paid, mock_stripe_service):
        await seed_paid(plan=PlanType.STARTER)
        mock_stripe_service.change_plan.side_effect = gateway_failure("change_plan")

        with pytest.raises(ExternalGatewayError):
            await lifecycle.change_plan(TENANT_ID, "agency")

        async with get_session_context() as session:
            stored = await SubscriptionRepository(session).find_active_by_tenant(TENANT_ID)
        assert stored.plan == PlanType.STARTER

    async def test_newer_gateway_write_wins(self, lifecycle, seed_paid):
        seeded = await seed_paid(plan=PlanType.STARTER)

        # The reconciler writes between the read and the local edit.
        async with get_session_context() as session:
            await SubscriptionRepository(session).compare_and_set(
                seeded.id, seeded.version, {"plan": PlanType.AGENCY.value}
            )

        result = await lifecycle._apply_local(seeded, {"plan": PlanType.PRO.value})

        assert result.plan == PlanType.AGENCY

    async def test_cancel_reason_survives_losing_race_to_webhook(
        self, lifecycle, seed_paid, mock_stripe_service,
    ):
        seeded = await seed_paid()

        async def webhook_lands_first(subscription_id):
            async with get_session_context() as session:
                await SubscriptionRepository(session).compare_and_set(
                    seeded.id, seeded.version, {"cancel_at_period_end": True}
                )

        mock_stripe_service.cancel_subscription.side_effect = webhook_lands_first

        response = await lifecycle.cancel(TENANT_ID, reason="too expensive")

        assert response.cancel_at_period_end is True
        async with get_session_context() as session:
            stored = await SubscriptionRepository(session).get_by_id(seeded.id)
        assert stored.cancel_reason == "too expensive"
        assert stored.version == seeded.version + 1


class TestPortalAndInvoices:

    async def test_portal_uses_stored_customer(self, lifecycle, seed_paid, mock_stripe_service):
        await seed_paid(customer_id="cus_9")

        response = await lifecycle.create_portal_session(TENANT_ID)

        assert response.url == "https://billing.stripe.com/p/session_1"
        assert mock_stripe_service.create_portal_session.call_args.args[0] == "cus_9"

    async def test_portal_without_customer(self, lifecycle, tenant):
        with pytest.raises(NotFoundError, match="No billing information found"):
            await lifecycle.create_portal_session(TENANT_ID)

    async def test_invoices_formatted(self, lifecycle, seed_paid, mock_stripe_service):
        await seed_paid()
        mock_stripe_service.list_paid_invoices.return_value = [
            {
                "id": "in_1",
                "created": int(datetime(2026, 9, 1, tzinfo=timezone.utc).timestamp()),
                "description": None,
                "amount_paid": 1900,
                "status": "paid",
                "invoice_pdf": "https://pay.stripe.com/in_1.pdf",
            }
        ]

        invoices = await lifecycle.list_invoices(TENANT_ID)

        assert len(invoices) == 1
        assert invoices[0].amount == "$19.00"
        assert invoices[0].description == "MagnetHub Subscription"
        assert invoices[0].date == datetime(2026, 9, 1, tzinfo=timezone.utc)

    async def test_no_customer_no_invoices(self, lifecycle, tenant, mock_stripe_service):
        assert await lifecycle.list_invoices(TENANT_ID) == []
        mock_stripe_service.list_paid_invoices.assert_not_called()
