"""
Subscription Domain Models

Domain models for subscription management following Clean Architecture.
Enums, DTOs, and domain entities for the subscription bounded context.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.domain.plans import PlanType


# Free records never expire; the lazy rollover check must never fire for them.
FREE_PLAN_HORIZON_YEARS = 100


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    CANCELED = "canceled"


class SubscriptionSource(str, Enum):
    """How a subscription record came to exist."""
    DEFAULT = "default"
    STRIPE_CHECKOUT = "stripe_checkout"
    STRIPE_WEBHOOK = "stripe_webhook"


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def free_plan_period_end(now: datetime) -> datetime:
    """Far-future period end for free records."""
    return datetime(now.year + FREE_PLAN_HORIZON_YEARS, 1, 1, tzinfo=timezone.utc)


# =============================================================================
# Domain Entities
# =============================================================================

class GatewayLinkage(BaseModel):
    """Confirmed gateway state needed to create a paid record."""
    customer_id: str
    subscription_id: str
    price_id: Optional[str] = None
    current_period_start: datetime
    current_period_end: datetime
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    cancel_at_period_end: bool = False


class PaymentSnapshot(BaseModel):
    """Last-known payment details recorded from invoice events."""
    invoice_id: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[int] = None  # In cents
    card_brand: Optional[str] = None
    card_last4: Optional[str] = None
    card_exp_month: Optional[int] = None
    card_exp_year: Optional[int] = None


class Subscription(BaseModel):
    """Core subscription domain entity. One row per lifecycle instance."""
    model_config = ConfigDict(from_attributes=True)

    id: Optional[str] = None
    tenant_id: str
    plan: PlanType = PlanType.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE

    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    stripe_price_id: Optional[str] = None

    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False

    units_created_this_period: int = Field(default=0, ge=0)
    usage_reset_at: Optional[datetime] = None

    started_at: datetime
    canceled_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    source: Optional[SubscriptionSource] = None
    cancel_reason: Optional[str] = None
    payment: PaymentSnapshot = Field(default_factory=PaymentSnapshot)

    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator(
        "current_period_start",
        "current_period_end",
        "usage_reset_at",
        "started_at",
        "canceled_at",
        "ended_at",
        "created_at",
        "updated_at",
    )
    @classmethod
    def _normalize_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def is_free(self) -> bool:
        return self.plan == PlanType.FREE


# =============================================================================
# Request/Response DTOs
# =============================================================================

class CheckoutRequest(BaseModel):
    """Request DTO for creating a checkout session."""
    plan: str = Field(..., description="Paid plan to purchase")


class CancelRequest(BaseModel):
    """Request DTO for cancelling at period end."""
    reason: Optional[str] = Field(default=None, max_length=500)


class ChangePlanRequest(BaseModel):
    """Request DTO for switching between paid plans."""
    plan: str = Field(..., description="Target paid plan")


class CheckoutResponse(BaseModel):
    """Response DTO for checkout session creation."""
    session_id: str
    url: Optional[str] = None


class PortalResponse(BaseModel):
    """Response DTO for portal session creation."""
    url: str


class PaymentMethodSummary(BaseModel):
    """Card summary shown on the billing tab."""
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None


class Entitlements(BaseModel):
    """Read-only snapshot of what a tenant may do right now."""
    plan: PlanType
    status: SubscriptionStatus
    units_used: int
    units_limit: Optional[int] = None
    units_remaining: Optional[int] = None
    next_billing_date: Optional[datetime] = None
    cancel_at_period_end: bool = False
    is_paid: bool = False


class SubscriptionStatusResponse(Entitlements):
    """Entitlements plus the card on file for the billing tab."""
    payment_method: Optional[PaymentMethodSummary] = None


class UsageResponse(BaseModel):
    """Response DTO after a unit was consumed."""
    plan: PlanType
    units_used: int
    units_limit: int
    units_remaining: int


class LifecycleResponse(BaseModel):
    """Response DTO for cancel / reactivate / change-plan."""
    message: str
    plan: PlanType
    cancel_at_period_end: bool
    current_period_end: Optional[datetime] = None


class InvoiceSummary(BaseModel):
    """Formatted invoice row."""
    id: str
    date: datetime
    description: str
    amount: str
    status: Optional[str] = None
    pdf_url: Optional[str] = None
