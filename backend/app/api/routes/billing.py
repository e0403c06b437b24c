"""
Billing API Routes

Authenticated endpoints for the calling tenant's plan, usage and
subscription lifecycle. Domain errors are mapped to HTTP statuses by the
exception handlers in ``app.main``.
"""

from fastapi import APIRouter, Depends

from app.api.dependencies import (
    get_billing_service,
    get_current_tenant_id,
    get_lifecycle_service,
)
from app.domain.subscription import (
    CancelRequest,
    ChangePlanRequest,
    CheckoutRequest,
    CheckoutResponse,
    InvoiceSummary,
    LifecycleResponse,
    PortalResponse,
    SubscriptionStatusResponse,
    UsageResponse,
)
from app.infrastructure.services.billing_service import BillingService
from app.infrastructure.services.subscription_lifecycle import SubscriptionLifecycleService


router = APIRouter(prefix="/billing")


# =============================================================================
# Status & Usage
# =============================================================================

@router.get("/subscription", response_model=SubscriptionStatusResponse)
async def get_subscription(
    tenant_id: str = Depends(get_current_tenant_id),
    billing: BillingService = Depends(get_billing_service),
):
    """
    Current plan, usage and card on file.

    Creates a free subscription on first access.
    """
    return await billing.get_billing_status(tenant_id)


@router.post("/usage/consume", response_model=UsageResponse)
async def consume_unit(
    tenant_id: str = Depends(get_current_tenant_id),
    billing: BillingService = Depends(get_billing_service),
):
    """Consume one lead magnet from the tenant's quota (402 when exhausted)."""
    return await billing.consume_unit(tenant_id)


# =============================================================================
# Checkout & Portal
# =============================================================================

@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout_session(
    request: CheckoutRequest,
    tenant_id: str = Depends(get_current_tenant_id),
    lifecycle: SubscriptionLifecycleService = Depends(get_lifecycle_service),
):
    """Create a Stripe Checkout session for a paid plan."""
    return await lifecycle.start_checkout(tenant_id, request.plan)


@router.post("/portal", response_model=PortalResponse)
async def create_portal_session(
    tenant_id: str = Depends(get_current_tenant_id),
    lifecycle: SubscriptionLifecycleService = Depends(get_lifecycle_service),
):
    return await lifecycle.create_portal_session(tenant_id)


@router.get("/invoices", response_model=list[InvoiceSummary])
async def list_invoices(
    tenant_id: str = Depends(get_current_tenant_id),
    lifecycle: SubscriptionLifecycleService = Depends(get_lifecycle_service),
):
    return await lifecycle.list_invoices(tenant_id)


# =============================================================================
# Lifecycle
# =============================================================================

@router.post("/cancel", response_model=LifecycleResponse)
async def cancel_subscription(
    request: CancelRequest | None = None,
    tenant_id: str = Depends(get_current_tenant_id),
    lifecycle: SubscriptionLifecycleService = Depends(get_lifecycle_service),
):
    """Cancel at the end of the current billing period."""
    reason = request.reason if request else None
    return await lifecycle.cancel(tenant_id, reason)


@router.post("/reactivate", response_model=LifecycleResponse)
async def reactivate_subscription(
    tenant_id: str = Depends(get_current_tenant_id),
    lifecycle: SubscriptionLifecycleService = Depends(get_lifecycle_service),
):
    return await lifecycle.reactivate(tenant_id)


@router.post("/change-plan", response_model=LifecycleResponse)
async def change_plan(
    request: ChangePlanRequest,
    tenant_id: str = Depends(get_current_tenant_id),
    lifecycle: SubscriptionLifecycleService = Depends(get_lifecycle_service),
):
    """Switch between paid plans; Stripe prorates the difference."""
    return await lifecycle.change_plan(tenant_id, request.plan)
