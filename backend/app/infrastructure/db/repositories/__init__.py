"""
Repository Layer for MagnetHub Billing

Exports all repository classes for dependency injection.
"""

from app.infrastructure.db.repositories.base_repository import BaseRepository
from app.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
)
from app.infrastructure.db.repositories.tenant_repository import (
    TenantRepository,
)


__all__ = [
    # Base
    "BaseRepository",
    # Repositories
    "SubscriptionRepository",
    "TenantRepository",
]
