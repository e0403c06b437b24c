"""
Subscription Database Model

SQLModel table for subscription data persistence. Append-mostly: one row
per lifecycle instance, never hard-deleted.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, Index, String, text
from sqlmodel import Field

from app.infrastructure.db.models.base import TimestampMixin


ACTIVE_STATUS_CLAUSE = text("status = 'active'")


class SubscriptionModel(TimestampMixin, table=True):
    """
    Subscription table for storing tenant subscription data.

    Maps to the 'subscriptions' table. A partial unique index guarantees at
    most one ``active`` row per tenant.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint("units_created_this_period >= 0", name="ck_subscriptions_units_non_negative"),
        Index("ix_subscriptions_tenant_status", "tenant_id", "status"),
        Index("ix_subscriptions_status_period_end", "status", "current_period_end"),
        Index(
            "uq_subscriptions_tenant_active",
            "tenant_id",
            unique=True,
            postgresql_where=ACTIVE_STATUS_CLAUSE,
            sqlite_where=ACTIVE_STATUS_CLAUSE,
        ),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True, nullable=False)
    tenant_id: str = Field(sa_type=String(64), nullable=False, index=True)

    plan: str = Field(default="free", sa_type=String(20), nullable=False)
    status: str = Field(default="active", sa_type=String(20), nullable=False)

    # Stripe IDs
    stripe_customer_id: Optional[str] = Field(default=None, sa_type=String(255), index=True)
    stripe_subscription_id: Optional[str] = Field(default=None, sa_type=String(255), unique=True)
    stripe_price_id: Optional[str] = Field(default=None, sa_type=String(255))

    # Billing period dates
    current_period_start: datetime = Field(sa_type=DateTime(timezone=True), nullable=False)
    current_period_end: datetime = Field(sa_type=DateTime(timezone=True), nullable=False)
    cancel_at_period_end: bool = Field(default=False, nullable=False)

    # Usage tracking
    units_created_this_period: int = Field(default=0, nullable=False)
    usage_reset_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    # Lifecycle dates
    started_at: datetime = Field(sa_type=DateTime(timezone=True), nullable=False)
    canceled_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    ended_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    # Metadata
    source: Optional[str] = Field(default=None, sa_type=String(30))
    cancel_reason: Optional[str] = Field(default=None, sa_type=String(500))
    last_invoice_id: Optional[str] = Field(default=None, sa_type=String(255))
    last_payment_status: Optional[str] = Field(default=None, sa_type=String(20))
    last_payment_amount: Optional[int] = Field(default=None)
    card_brand: Optional[str] = Field(default=None, sa_type=String(30))
    card_last4: Optional[str] = Field(default=None, sa_type=String(4))
    card_exp_month: Optional[int] = Field(default=None)
    card_exp_year: Optional[int] = Field(default=None)

    # Bumped by billing-state writes; usage counter updates are atomic on their own.
    version: int = Field(default=1, nullable=False)
