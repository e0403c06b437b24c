"""
Billing Service

Entitlement reads and quota consumption for feature code.

Each public method runs its own short unit of work. Nothing here calls the
payment gateway while a write is in flight; the only gateway call is the
read-only card lookup in ``get_billing_status``.
"""

import logging
from typing import AsyncContextManager, Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config.settings import get_settings
from app.domain.entitlements import (
    QuotaCheck,
    build_entitlements,
    evaluate_quota,
    is_paid,
    needs_rollover,
)
from app.domain.subscription import (
    Entitlements,
    PaymentMethodSummary,
    Subscription,
    SubscriptionStatusResponse,
    UsageResponse,
    utcnow,
)
from app.infrastructure.db.database import get_session_context
from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from app.infrastructure.exceptions import DatabaseError, QuotaExceededError


logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


class BillingService:
    """
    Entitlement evaluator backed by the subscription store.

    Args:
        session_factory: Opens one unit of work (commit on exit)
        stripe_service: Gateway adapter, only used for card lookups
        max_attempts: Bound on retries after losing a write race
    """

    def __init__(
        self,
        session_factory: SessionFactory = get_session_context,
        stripe_service=None,
        max_attempts: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self._stripe = stripe_service
        self._max_attempts = max_attempts or get_settings().reconcile_max_attempts

    # =========================================================================
    # Record Access
    # =========================================================================

    async def get_or_create_subscription(self, tenant_id: str) -> Subscription:
        """
        Return the tenant's current record, creating a free one if none exists.

        Two first-time requests for the same tenant race on the partial
        unique index; the loser re-reads the winner's record.
        """
        for attempt in range(1, self._max_attempts + 1):
            try:
                async with self._session_factory() as session:
                    repo = SubscriptionRepository(session)
                    current = await repo.find_current_by_tenant(tenant_id)
                    if current:
                        return current
                    return await repo.create_free(tenant_id)
            except IntegrityError:
                logger.info(
                    f"Concurrent free subscription creation for tenant {tenant_id} "
                    f"(attempt {attempt}); re-reading"
                )

        raise DatabaseError(
            f"Could not load subscription for tenant {tenant_id}",
            operation="get_or_create_subscription",
            table="subscriptions",
        )

    async def rollover_if_needed(self, subscription: Subscription) -> Subscription:
        """
        Lazy period rollover.

        Resets the usage counter of a paid record whose period has lapsed
        while the renewal webhook is still pending. Applied at most once per
        period boundary.
        """
        now = utcnow()
        if not needs_rollover(subscription, now):
            return subscription

        async with self._session_factory() as session:
            repo = SubscriptionRepository(session)
            if await repo.rollover_usage(subscription.id, now):
                logger.info(
                    f"Rolled over usage for subscription {subscription.id} "
                    f"(period ended {subscription.current_period_end.isoformat()})"
                )
            refreshed = await repo.get_by_id(subscription.id)

        return refreshed or subscription

    # =========================================================================
    # Quota
    # =========================================================================

    async def can_consume_unit(self, tenant_id: str) -> QuotaCheck:
        """Check quota without consuming."""
        subscription = await self.get_or_create_subscription(tenant_id)
        subscription = await self.rollover_if_needed(subscription)
        return evaluate_quota(subscription)

    async def consume_unit(self, tenant_id: str) -> UsageResponse:
        """
        Consume one unit of the tenant's quota.

        The increment is a conditional update guarded by the cap, so
        concurrent callers can never push the counter past it.

        Raises:
            QuotaExceededError: no quota left
        """
        for attempt in range(1, self._max_attempts + 1):
            subscription = await self.get_or_create_subscription(tenant_id)
            subscription = await self.rollover_if_needed(subscription)

            check = evaluate_quota(subscription)
            if not check.allowed:
                logger.info(f"Quota exceeded for tenant {tenant_id}: {check.used}/{check.cap} ({subscription.plan.value})")
                raise QuotaExceededError(
                    check.reason,
                    plan=subscription.plan.value,
                    cap=check.cap,
                    used=check.used,
                    resets_at=check.resets_at,
                )

            async with self._session_factory() as session:
                repo = SubscriptionRepository(session)
                if await repo.increment_usage(subscription.id, subscription.plan, check.cap):
                    updated = await repo.get_by_id(subscription.id)
                    logger.info(
                        f"Tenant {tenant_id} consumed a unit: "
                        f"{updated.units_created_this_period}/{check.cap} ({updated.plan.value})"
                    )
                    return UsageResponse(
                        plan=updated.plan,
                        units_used=updated.units_created_this_period,
                        units_limit=check.cap,
                        units_remaining=max(0, check.cap - updated.units_created_this_period),
                    )

            logger.info(f"Usage increment for tenant {tenant_id} lost a race (attempt {attempt}); re-evaluating")

        raise DatabaseError(
            f"Could not record usage for tenant {tenant_id}",
            operation="consume_unit",
            table="subscriptions",
        )

    # =========================================================================
    # Read Models
    # =========================================================================

    async def get_entitlements(self, tenant_id: str) -> Entitlements:
        """Read-only entitlement snapshot. Applies the lazy rollover first."""
        subscription = await self.get_or_create_subscription(tenant_id)
        subscription = await self.rollover_if_needed(subscription)
        return build_entitlements(subscription)

    async def get_billing_status(self, tenant_id: str) -> SubscriptionStatusResponse:
        """Entitlements plus the card on file when the tenant is paying."""
        subscription = await self.get_or_create_subscription(tenant_id)
        subscription = await self.rollover_if_needed(subscription)
        entitlements = build_entitlements(subscription)

        payment_method = None
        if is_paid(subscription):
            payment_method = await self._payment_method(subscription)

        return SubscriptionStatusResponse(
            **entitlements.model_dump(),
            payment_method=payment_method,
        )

    async def _payment_method(self, subscription: Subscription) -> Optional[PaymentMethodSummary]:
        payment = subscription.payment
        if payment.card_last4:
            return PaymentMethodSummary(
                brand=payment.card_brand,
                last4=payment.card_last4,
                exp_month=payment.card_exp_month,
                exp_year=payment.card_exp_year,
            )

        if self._stripe is None or not subscription.stripe_customer_id:
            return None

        card = await self._stripe.get_customer_payment_method(subscription.stripe_customer_id)
        return PaymentMethodSummary(**card) if card else None
