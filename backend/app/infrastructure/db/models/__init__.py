"""
SQLModel ORM Models for MagnetHub Billing

Exports all database models for Alembic autogenerate and application use.
Import models here to register them with SQLModel.metadata.
"""

from app.infrastructure.db.models.base import TimestampMixin
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.db.models.tenant import TenantModel


__all__ = [
    # Base
    "TimestampMixin",
    # Billing
    "SubscriptionModel",
    "TenantModel",
]
