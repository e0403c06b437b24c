"""
Tenant Database Model

Minimal tenant directory: contact details for the gateway customer, the
stored Stripe customer ID, and the current-subscription pointer.
"""

from typing import Optional
from uuid import UUID

from sqlalchemy import String
from sqlmodel import Field

from app.infrastructure.db.models.base import TimestampMixin


class TenantModel(TimestampMixin, table=True):
    """Maps to the 'tenants' table."""

    __tablename__ = "tenants"

    id: str = Field(sa_type=String(64), primary_key=True)
    email: str = Field(sa_type=String(255), nullable=False)
    name: Optional[str] = Field(default=None, sa_type=String(255))

    stripe_customer_id: Optional[str] = Field(default=None, sa_type=String(255), unique=True)

    # Written only by the webhook reconciler.
    current_subscription_id: Optional[UUID] = Field(default=None)
