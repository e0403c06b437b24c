"""
Tenant Repository

Access to the tenant directory: gateway customer linkage and the
current-subscription pointer.
"""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.infrastructure.db.models.tenant import TenantModel
from app.infrastructure.db.repositories.base_repository import BaseRepository


logger = logging.getLogger(__name__)


class TenantRepository(BaseRepository[TenantModel]):
    """Repository for tenant directory rows."""

    def __init__(self, session: AsyncSession):
        super().__init__(TenantModel, session)

    async def get(self, tenant_id: str) -> Optional[TenantModel]:
        return await self._get_model(tenant_id)

    async def get_by_customer_id(self, customer_id: str) -> Optional[TenantModel]:
        stmt = (
            select(TenantModel)
            .where(TenantModel.stripe_customer_id == customer_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        tenant_id: str,
        email: str,
        name: Optional[str] = None,
    ) -> TenantModel:
        return await self._add(TenantModel(id=tenant_id, email=email, name=name))

    async def lock(self, tenant_id: str) -> Optional[TenantModel]:
        """
        Take the tenant row lock for the rest of the transaction.

        Serializes terminate-then-create transitions for one tenant on
        PostgreSQL; SQLite serializes writers on its own.
        """
        stmt = (
            select(TenantModel)
            .where(TenantModel.id == tenant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def set_customer_id_if_absent(
        self,
        tenant_id: str,
        customer_id: str,
    ) -> Optional[str]:
        """
        Store the gateway customer ID unless one is already stored.

        Returns:
            The stored customer ID (ours, or the one that won the race)
        """
        stmt = (
            update(TenantModel)
            .where(
                TenantModel.id == tenant_id,
                TenantModel.stripe_customer_id.is_(None),
            )
            .values(stripe_customer_id=customer_id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount:
            logger.info(f"Saved Stripe customer ID {customer_id} to tenant {tenant_id}")

        tenant = await self.get(tenant_id)
        return tenant.stripe_customer_id if tenant else None

    async def set_current_subscription(
        self,
        tenant_id: str,
        subscription_id: str | UUID,
    ) -> bool:
        """Repoint the tenant at its current subscription record."""
        sub_uuid = subscription_id if isinstance(subscription_id, UUID) else UUID(subscription_id)
        stmt = (
            update(TenantModel)
            .where(TenantModel.id == tenant_id)
            .values(current_subscription_id=sub_uuid)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if not result.rowcount:
            logger.warning(f"Tenant {tenant_id} not in directory; current subscription pointer not updated")
        return bool(result.rowcount)
