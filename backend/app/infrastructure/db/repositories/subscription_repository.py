"""
Subscription Repository

Data access layer for subscription persistence.

Every write that depends on a prior read is a single conditional UPDATE:
usage increments and rollovers are guarded by their own WHERE clause,
billing-state writes are compare-and-set on the ``version`` column.
"""

import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.plans import PlanType
from app.domain.subscription import (
    GatewayLinkage,
    PaymentSnapshot,
    Subscription,
    SubscriptionSource,
    SubscriptionStatus,
    free_plan_period_end,
    utcnow,
)
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.db.repositories.base_repository import BaseRepository
from app.infrastructure.exceptions import StaleRecordError


logger = logging.getLogger(__name__)

_ACTIVE = SubscriptionStatus.ACTIVE.value


def _uuid(value: str | UUID) -> UUID:
    return value if isinstance(value, UUID) else UUID(value)


class SubscriptionRepository(BaseRepository[SubscriptionModel]):
    """
    Repository for subscription data access.

    Maps rows to the ``Subscription`` domain entity. Records are never
    hard-deleted; termination is a status transition.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(SubscriptionModel, session)

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get_by_id(self, subscription_id: str) -> Optional[Subscription]:
        model = await self._get_model(_uuid(subscription_id))
        return self._to_domain(model) if model else None

    async def find_active_by_tenant(
        self,
        tenant_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[Subscription]:
        """
        Get the tenant's active record whose period has not ended.

        Args:
            tenant_id: Owning tenant
            now: Reference time (defaults to current UTC time)

        Returns:
            Subscription domain model or None
        """
        now = now or utcnow()
        stmt = (
            select(SubscriptionModel)
            .where(
                SubscriptionModel.tenant_id == tenant_id,
                SubscriptionModel.status == _ACTIVE,
                SubscriptionModel.current_period_end > now,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return self._to_domain(model) if model else None

    async def find_current_by_tenant(self, tenant_id: str) -> Optional[Subscription]:
        """
        Get the tenant's ``active`` record regardless of period end.

        Differs from ``find_active_by_tenant`` only while a paid period has
        lapsed and the renewal webhook has not arrived yet.
        """
        stmt = (
            select(SubscriptionModel)
            .where(
                SubscriptionModel.tenant_id == tenant_id,
                SubscriptionModel.status == _ACTIVE,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return self._to_domain(model) if model else None

    async def get_by_stripe_subscription_id(
        self,
        stripe_subscription_id: str,
    ) -> Optional[Subscription]:
        stmt = (
            select(SubscriptionModel)
            .where(SubscriptionModel.stripe_subscription_id == stripe_subscription_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return self._to_domain(model) if model else None

    async def list_by_tenant(self, tenant_id: str) -> list[Subscription]:
        """All records for a tenant, oldest first."""
        stmt = (
            select(SubscriptionModel)
            .where(SubscriptionModel.tenant_id == tenant_id)
            .order_by(SubscriptionModel.started_at, SubscriptionModel.created_at)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return [self._to_domain(model) for model in result.scalars().all()]

    async def list_rollover_candidates(
        self,
        now: Optional[datetime] = None,
        limit: int = 500,
    ) -> list[Subscription]:
        """Active paid records whose period lapsed and were not reset yet."""
        now = now or utcnow()
        stmt = (
            select(SubscriptionModel)
            .where(
                SubscriptionModel.status == _ACTIVE,
                SubscriptionModel.plan != PlanType.FREE.value,
                SubscriptionModel.current_period_end <= now,
                or_(
                    SubscriptionModel.usage_reset_at.is_(None),
                    SubscriptionModel.usage_reset_at < SubscriptionModel.current_period_end,
                ),
            )
            .order_by(SubscriptionModel.current_period_end)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [self._to_domain(model) for model in result.scalars().all()]

    # =========================================================================
    # Command Methods
    # =========================================================================

    async def create_free(
        self,
        tenant_id: str,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """
        Insert a free record that never expires.

        Raises IntegrityError if the tenant already holds an active record.
        """
        now = now or utcnow()
        model = SubscriptionModel(
            tenant_id=tenant_id,
            plan=PlanType.FREE.value,
            status=_ACTIVE,
            current_period_start=now,
            current_period_end=free_plan_period_end(now),
            started_at=now,
            cancel_at_period_end=False,
            units_created_this_period=0,
            source=SubscriptionSource.DEFAULT.value,
        )
        model = await self._add(model)
        logger.info(f"Created free subscription {model.id} for tenant {tenant_id}")
        return self._to_domain(model)

    async def create_paid(
        self,
        tenant_id: str,
        plan: PlanType,
        linkage: GatewayLinkage,
        source: SubscriptionSource = SubscriptionSource.STRIPE_CHECKOUT,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """
        Insert a paid record from confirmed gateway state.

        Callers terminate the tenant's previous active record first, in the
        same transaction.
        """
        now = now or utcnow()
        model = SubscriptionModel(
            tenant_id=tenant_id,
            plan=plan.value,
            status=linkage.status.value,
            stripe_customer_id=linkage.customer_id,
            stripe_subscription_id=linkage.subscription_id,
            stripe_price_id=linkage.price_id,
            current_period_start=linkage.current_period_start,
            current_period_end=linkage.current_period_end,
            cancel_at_period_end=linkage.cancel_at_period_end,
            started_at=now,
            units_created_this_period=0,
            source=source.value,
        )
        model = await self._add(model)
        logger.info(
            f"Created {plan.value} subscription {model.id} for tenant {tenant_id} "
            f"(stripe={linkage.subscription_id}, status={linkage.status.value})"
        )
        return self._to_domain(model)

    async def terminate_active(
        self,
        tenant_id: str,
        now: Optional[datetime] = None,
        exclude_id: Optional[str] = None,
    ) -> int:
        """
        Cancel every active record of a tenant.

        Returns:
            Number of records terminated
        """
        now = now or utcnow()
        conditions = [
            SubscriptionModel.tenant_id == tenant_id,
            SubscriptionModel.status == _ACTIVE,
        ]
        if exclude_id:
            conditions.append(SubscriptionModel.id != _uuid(exclude_id))

        stmt = (
            update(SubscriptionModel)
            .where(*conditions)
            .values(
                status=SubscriptionStatus.CANCELED.value,
                canceled_at=now,
                ended_at=now,
                version=SubscriptionModel.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount:
            logger.info(f"Terminated {result.rowcount} active subscription(s) for tenant {tenant_id}")
        return result.rowcount

    async def compare_and_set(
        self,
        subscription_id: str,
        expected_version: int,
        values: dict[str, Any],
    ) -> Subscription:
        """
        Write billing-state fields if the row is still at ``expected_version``.

        Raises:
            StaleRecordError: the row changed since it was read
        """
        stmt = (
            update(SubscriptionModel)
            .where(
                SubscriptionModel.id == _uuid(subscription_id),
                SubscriptionModel.version == expected_version,
            )
            .values(**values, version=expected_version + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            raise StaleRecordError(
                f"Subscription {subscription_id} changed since version {expected_version}",
                operation="compare_and_set",
                table="subscriptions",
            )
        return await self.get_by_id(subscription_id)

    async def increment_usage(
        self,
        subscription_id: str,
        plan: PlanType,
        cap: int,
    ) -> bool:
        """
        Atomically consume one unit if the record is still active on ``plan``
        and below ``cap``.

        Returns:
            True if the counter was incremented
        """
        stmt = (
            update(SubscriptionModel)
            .where(
                SubscriptionModel.id == _uuid(subscription_id),
                SubscriptionModel.status == _ACTIVE,
                SubscriptionModel.plan == plan.value,
                SubscriptionModel.units_created_this_period < cap,
            )
            .values(units_created_this_period=SubscriptionModel.units_created_this_period + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def rollover_usage(
        self,
        subscription_id: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Lazy rollover: zero the counter of a lapsed paid period, once.

        ``usage_reset_at`` marks the reset so repeated checks before the
        renewal webhook arrives do not reset again.

        Returns:
            True if this call performed the reset
        """
        now = now or utcnow()
        stmt = (
            update(SubscriptionModel)
            .where(
                SubscriptionModel.id == _uuid(subscription_id),
                SubscriptionModel.plan != PlanType.FREE.value,
                SubscriptionModel.current_period_end <= now,
                or_(
                    SubscriptionModel.usage_reset_at.is_(None),
                    SubscriptionModel.usage_reset_at < SubscriptionModel.current_period_end,
                ),
            )
            .values(units_created_this_period=0, usage_reset_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def reset_usage_for_new_period(
        self,
        subscription_id: str,
        previous_period_end: datetime,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Zero the counter when the gateway confirms a new period, unless the
        lazy rollover already did so for the boundary at ``previous_period_end``.
        """
        now = now or utcnow()
        stmt = (
            update(SubscriptionModel)
            .where(
                SubscriptionModel.id == _uuid(subscription_id),
                or_(
                    SubscriptionModel.usage_reset_at.is_(None),
                    SubscriptionModel.usage_reset_at < previous_period_end,
                ),
            )
            .values(units_created_this_period=0, usage_reset_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def record_payment(
        self,
        subscription_id: str,
        payment: PaymentSnapshot,
    ) -> None:
        """Store last-known payment metadata. Card fields are kept when absent."""
        values: dict[str, Any] = {
            "last_invoice_id": payment.invoice_id,
            "last_payment_status": payment.status,
            "last_payment_amount": payment.amount,
        }
        if payment.card_last4:
            values.update(
                card_brand=payment.card_brand,
                card_last4=payment.card_last4,
                card_exp_month=payment.card_exp_month,
                card_exp_year=payment.card_exp_year,
            )

        stmt = (
            update(SubscriptionModel)
            .where(SubscriptionModel.id == _uuid(subscription_id))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def record_cancel_reason(self, subscription_id: str, reason: str) -> bool:
        """Keep a cancellation reason on a record that has none yet. Not versioned."""
        stmt = (
            update(SubscriptionModel)
            .where(
                SubscriptionModel.id == _uuid(subscription_id),
                SubscriptionModel.cancel_reason.is_(None),
            )
            .values(cancel_reason=reason)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    # =========================================================================
    # Mapping Methods
    # =========================================================================

    def _to_domain(self, model: SubscriptionModel) -> Subscription:
        """Convert database model to domain entity."""
        return Subscription(
            id=str(model.id),
            tenant_id=model.tenant_id,
            plan=PlanType(model.plan),
            status=SubscriptionStatus(model.status),
            stripe_customer_id=model.stripe_customer_id,
            stripe_subscription_id=model.stripe_subscription_id,
            stripe_price_id=model.stripe_price_id,
            current_period_start=model.current_period_start,
            current_period_end=model.current_period_end,
            cancel_at_period_end=model.cancel_at_period_end or False,
            units_created_this_period=model.units_created_this_period or 0,
            usage_reset_at=model.usage_reset_at,
            started_at=model.started_at,
            canceled_at=model.canceled_at,
            ended_at=model.ended_at,
            source=SubscriptionSource(model.source) if model.source else None,
            cancel_reason=model.cancel_reason,
            payment=PaymentSnapshot(
                invoice_id=model.last_invoice_id,
                status=model.last_payment_status,
                amount=model.last_payment_amount,
                card_brand=model.card_brand,
                card_last4=model.card_last4,
                card_exp_month=model.card_exp_month,
                card_exp_year=model.card_exp_year,
            ),
            version=model.version,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )
