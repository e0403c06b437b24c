"""
Test configuration and fixtures for MagnetHub Billing.

Provides shared fixtures for unit and integration tests. Store, service and
reconciler tests run against a temporary SQLite file per test; Stripe is
always mocked.
"""

from datetime import datetime, timedelta
from typing import AsyncGenerator, Optional
from uuid import UUID
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update

from app.domain.plans import PlanType
from app.domain.subscription import GatewayLinkage, SubscriptionSource, SubscriptionStatus, utcnow
from app.infrastructure.db.database import DatabaseManager, get_session_context, set_db_manager
from app.infrastructure.db.models import SubscriptionModel
from app.infrastructure.db.repositories import SubscriptionRepository, TenantRepository


TENANT_ID = "tenant-1"

PRICE_IDS = {
    PlanType.STARTER: "price_starter",
    PlanType.PRO: "price_pro",
    PlanType.AGENCY: "price_agency",
}
PRICE_TO_PLAN = {price: plan for plan, price in PRICE_IDS.items()}


# =============================================================================
# App Fixtures
# =============================================================================

@pytest.fixture
def app():
    """Get the FastAPI application with clean dependency overrides."""
    from app.main import app

    app.dependency_overrides.clear()
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """Get synchronous test client."""
    return TestClient(app)


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async test client sharing the test's event loop (and database engine)."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
async def db_manager(tmp_path) -> AsyncGenerator[DatabaseManager, None]:
    """Fresh SQLite database installed as the process-wide manager."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path}/billing.db")
    await manager.create_tables()
    set_db_manager(manager)
    yield manager
    set_db_manager(None)
    await manager.drop_tables()
    await manager.close()


@pytest.fixture
async def tenant(db_manager) -> str:
    """A tenant in the directory without a Stripe customer yet."""
    async with get_session_context() as session:
        await TenantRepository(session).create(TENANT_ID, "owner@acme.test", "Acme")
    return TENANT_ID


@pytest.fixture
def seed_paid(db_manager):
    """Insert an active paid subscription directly through the store."""

    async def _seed(
        tenant_id: str = TENANT_ID,
        plan: PlanType = PlanType.STARTER,
        subscription_id: str = "sub_1",
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        units: int = 0,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        customer_id: str = "cus_1",
    ):
        now = utcnow().replace(microsecond=0)
        period_start = period_start or now - timedelta(days=5)
        period_end = period_end or now + timedelta(days=25)

        async with get_session_context() as session:
            repo = SubscriptionRepository(session)
            if status == SubscriptionStatus.ACTIVE:
                await repo.terminate_active(tenant_id)
            sub = await repo.create_paid(
                tenant_id,
                plan,
                GatewayLinkage(
                    customer_id=customer_id,
                    subscription_id=subscription_id,
                    price_id=PRICE_IDS[plan],
                    current_period_start=period_start,
                    current_period_end=period_end,
                    status=status,
                ),
                source=SubscriptionSource.STRIPE_CHECKOUT,
            )
            if units:
                await session.execute(
                    update(SubscriptionModel)
                    .where(SubscriptionModel.id == UUID(sub.id))
                    .values(units_created_this_period=units)
                )
            return await repo.get_by_id(sub.id)

    return _seed


@pytest.fixture
def list_subscriptions(db_manager):
    """All records of a tenant, oldest first."""

    async def _list(tenant_id: str = TENANT_ID):
        async with get_session_context() as session:
            return await SubscriptionRepository(session).list_by_tenant(tenant_id)

    return _list


@pytest.fixture
def get_tenant(db_manager):
    async def _get(tenant_id: str = TENANT_ID):
        async with get_session_context() as session:
            return await TenantRepository(session).get(tenant_id)

    return _get


# =============================================================================
# Mock Fixtures
# =============================================================================

@pytest.fixture
def mock_stripe_service():
    """Mock for StripeService with plan/price mapping wired up."""
    mock = MagicMock()
    mock.create_customer = AsyncMock(return_value="cus_new")
    mock.create_checkout_session = AsyncMock(
        return_value={"id": "cs_test_1", "url": "https://checkout.stripe.com/c/cs_test_1"}
    )
    mock.cancel_subscription = AsyncMock(return_value=None)
    mock.reactivate_subscription = AsyncMock(return_value=None)
    mock.change_plan = AsyncMock(side_effect=lambda subscription_id, plan: PRICE_IDS[plan])
    mock.create_portal_session = AsyncMock(return_value="https://billing.stripe.com/p/session_1")
    mock.list_paid_invoices = AsyncMock(return_value=[])
    mock.get_customer_payment_method = AsyncMock(return_value=None)
    mock.get_subscription_data = AsyncMock()
    mock.get_plan_from_price_id = MagicMock(
        side_effect=lambda price_id: PRICE_TO_PLAN.get(price_id, PlanType.FREE)
    )
    mock.get_price_id_for_plan = MagicMock(side_effect=lambda plan: PRICE_IDS[plan])
    mock.construct_webhook_event = MagicMock()
    return mock


# =============================================================================
# Stripe Payload Fixtures
# =============================================================================

def _ts(value: datetime) -> int:
    return int(value.timestamp())


@pytest.fixture
def subscription_object():
    """Build a Stripe subscription object (current API shape)."""

    def _build(
        subscription_id: str = "sub_1",
        status: str = "active",
        plan: PlanType = PlanType.STARTER,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        customer_id: str = "cus_1",
        tenant_id: Optional[str] = TENANT_ID,
        cancel_at_period_end: bool = False,
        price_id: Optional[str] = None,
    ) -> dict:
        now = utcnow().replace(microsecond=0)
        period_start = period_start or now - timedelta(days=5)
        period_end = period_end or now + timedelta(days=25)
        metadata = {"plan": plan.value}
        if tenant_id:
            metadata["tenant_id"] = tenant_id

        return {
            "id": subscription_id,
            "object": "subscription",
            "customer": customer_id,
            "status": status,
            "cancel_at_period_end": cancel_at_period_end,
            "metadata": metadata,
            "items": {
                "data": [
                    {
                        "id": f"si_{subscription_id}",
                        "current_period_start": _ts(period_start),
                        "current_period_end": _ts(period_end),
                        "price": {"id": price_id or PRICE_IDS[plan]},
                    }
                ]
            },
        }

    return _build


@pytest.fixture
def gateway_event():
    """Wrap an object in a Stripe event envelope."""
    counter = {"n": 0}

    def _build(event_type: str, obj: dict, event_id: Optional[str] = None) -> dict:
        counter["n"] += 1
        return {
            "id": event_id or f"evt_{counter['n']}",
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }

    return _build


@pytest.fixture
def checkout_session_object():
    """Build a completed Checkout Session referencing a subscription."""

    def _build(
        subscription,
        tenant_id: Optional[str] = TENANT_ID,
        plan: PlanType = PlanType.STARTER,
        customer_id: str = "cus_1",
        session_id: str = "cs_test_1",
    ) -> dict:
        metadata = {"plan": plan.value}
        if tenant_id:
            metadata["tenant_id"] = tenant_id
        return {
            "id": session_id,
            "object": "checkout.session",
            "customer": customer_id,
            "subscription": subscription,
            "metadata": metadata,
            "amount_total": 1900,
        }

    return _build
