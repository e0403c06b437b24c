"""
Subscription Lifecycle Service

Tenant-initiated billing actions: checkout, cancel at period end,
reactivate, plan change, billing portal and invoice history.

Every action asks the gateway first and only then touches the local record.
A failed or timed-out gateway call leaves local state exactly as it was,
so the caller can retry the whole action.

Local edits are optimistic: they are written with compare-and-set against
the version that was read. If the reconciler wrote in between, its view is
newer and the local edit is skipped.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from app.config.settings import get_settings
from app.domain.plans import PlanType, is_upgrade, parse_plan
from app.domain.subscription import (
    CheckoutResponse,
    InvoiceSummary,
    LifecycleResponse,
    PortalResponse,
    Subscription,
)
from app.infrastructure.db.database import get_session_context
from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from app.infrastructure.db.repositories.tenant_repository import TenantRepository
from app.infrastructure.exceptions import (
    ConflictError,
    NotFoundError,
    StaleRecordError,
)
from app.infrastructure.services.billing_service import SessionFactory


logger = logging.getLogger(__name__)

DEFAULT_CANCEL_REASON = "user_requested"
INVOICE_LIMIT = 20


class SubscriptionLifecycleService:
    """
    Lifecycle operations for one tenant's subscription.

    Args:
        stripe_service: Gateway adapter
        session_factory: Opens one unit of work (commit on exit)
    """

    def __init__(self, stripe_service, session_factory: SessionFactory = get_session_context):
        self._stripe = stripe_service
        self._session_factory = session_factory

    # =========================================================================
    # Checkout
    # =========================================================================

    async def start_checkout(self, tenant_id: str, plan: str | PlanType) -> CheckoutResponse:
        """
        Open a hosted checkout session for a paid plan.

        Does not change any subscription; the paid record is created when
        the checkout webhook arrives.

        Raises:
            ValidationError: unknown or free plan
            ConflictError: tenant already pays for a plan
            NotFoundError: tenant not in the directory
            ExternalGatewayError: Stripe call failed
        """
        target = parse_plan(plan.value if isinstance(plan, PlanType) else plan, paid_only=True)

        async with self._session_factory() as session:
            current = await SubscriptionRepository(session).find_active_by_tenant(tenant_id)
            if current and not current.is_free:
                raise ConflictError(
                    f"You already have an active {current.plan.value} subscription. "
                    f"Please manage it from the billing settings.",
                    details={"plan": current.plan.value},
                )

            tenant = await TenantRepository(session).get(tenant_id)
            if tenant is None:
                raise NotFoundError("Tenant not found", operation="start_checkout", table="tenants")
            customer_id = tenant.stripe_customer_id
            email, name = tenant.email, tenant.name

        if not customer_id:
            created_id = await self._stripe.create_customer(tenant_id, email, name)
            async with self._session_factory() as session:
                customer_id = await TenantRepository(session).set_customer_id_if_absent(tenant_id, created_id)

        billing_url = get_settings().billing_settings_url
        checkout = await self._stripe.create_checkout_session(
            customer_id=customer_id,
            tenant_id=tenant_id,
            plan=target,
            success_url=f"{billing_url}&success=true&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{billing_url}&canceled=true",
        )

        logger.info(f"Started checkout for tenant {tenant_id}, plan={target.value}")
        return CheckoutResponse(session_id=checkout["id"], url=checkout.get("url"))

    # =========================================================================
    # Cancel / Reactivate
    # =========================================================================

    async def cancel(self, tenant_id: str, reason: Optional[str] = None) -> LifecycleResponse:
        """
        Schedule cancellation at the end of the current period.

        Status stays active until the gateway reports the period has ended.
        """
        subscription = await self._require_paid(tenant_id)
        if subscription.cancel_at_period_end:
            raise ConflictError("Subscription is already scheduled for cancellation")

        reason = reason or DEFAULT_CANCEL_REASON
        await self._stripe.cancel_subscription(subscription.stripe_subscription_id)
        updated = await self._apply_local(
            subscription,
            {
                "cancel_at_period_end": True,
                "cancel_reason": reason,
            },
        )

        # Webhooks never carry the reason; keep it when a gateway write won the race.
        if updated.cancel_reason is None:
            async with self._session_factory() as session:
                repo = SubscriptionRepository(session)
                if await repo.record_cancel_reason(subscription.id, reason):
                    updated = await repo.get_by_id(subscription.id)

        logger.info(f"Tenant {tenant_id} scheduled cancellation of {subscription.id}")
        return self._response("Subscription will be canceled at the end of your billing period", updated)

    async def reactivate(self, tenant_id: str) -> LifecycleResponse:
        """Undo a scheduled cancellation."""
        subscription = await self._require_paid(tenant_id)
        if not subscription.cancel_at_period_end:
            raise ConflictError("Subscription is not scheduled for cancellation")

        await self._stripe.reactivate_subscription(subscription.stripe_subscription_id)
        updated = await self._apply_local(
            subscription,
            {
                "cancel_at_period_end": False,
                "cancel_reason": None,
            },
        )

        logger.info(f"Tenant {tenant_id} reactivated {subscription.id}")
        return self._response("Subscription has been reactivated successfully", updated)

    # =========================================================================
    # Plan Change
    # =========================================================================

    async def change_plan(self, tenant_id: str, plan: str | PlanType) -> LifecycleResponse:
        """
        Switch between paid plans.

        Stripe prorates. The local plan is updated right away and later
        confirmed or overridden by the subscription update webhook.
        """
        target = parse_plan(plan.value if isinstance(plan, PlanType) else plan, paid_only=True)
        subscription = await self._require_paid(
            tenant_id,
            missing_message="No active subscription found. Please subscribe first.",
        )
        if subscription.plan == target:
            raise ConflictError(f"You are already on the {target.value} plan")

        new_price_id = await self._stripe.change_plan(subscription.stripe_subscription_id, target)
        updated = await self._apply_local(
            subscription,
            {
                "plan": target.value,
                "stripe_price_id": new_price_id,
            },
        )

        direction = "upgraded" if is_upgrade(subscription.plan, target) else "downgraded"
        logger.info(f"Tenant {tenant_id} {direction} {subscription.plan.value} -> {target.value}")
        return self._response(f"Successfully {direction} to {target.value} plan", updated)

    # =========================================================================
    # Portal / Invoices
    # =========================================================================

    async def create_portal_session(self, tenant_id: str) -> PortalResponse:
        customer_id = await self._customer_id(tenant_id)
        if not customer_id:
            raise NotFoundError("No billing information found", operation="create_portal_session")

        url = await self._stripe.create_portal_session(customer_id, get_settings().billing_settings_url)
        return PortalResponse(url=url)

    async def list_invoices(self, tenant_id: str) -> list[InvoiceSummary]:
        """Paid invoices, newest first. Empty when the tenant never paid."""
        customer_id = await self._customer_id(tenant_id)
        if not customer_id:
            return []

        invoices = await self._stripe.list_paid_invoices(customer_id, limit=INVOICE_LIMIT)
        return [_format_invoice(invoice) for invoice in invoices]

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _require_paid(
        self,
        tenant_id: str,
        missing_message: str = "No active subscription found",
    ) -> Subscription:
        async with self._session_factory() as session:
            subscription = await SubscriptionRepository(session).find_active_by_tenant(tenant_id)

        if subscription is None or subscription.is_free or not subscription.stripe_subscription_id:
            raise NotFoundError(missing_message, operation="find_active_by_tenant", table="subscriptions")
        return subscription

    async def _apply_local(self, subscription: Subscription, values: dict[str, Any]) -> Subscription:
        """Compare-and-set the local edit; a newer gateway write wins."""
        try:
            async with self._session_factory() as session:
                return await SubscriptionRepository(session).compare_and_set(
                    subscription.id,
                    subscription.version,
                    values,
                )
        except StaleRecordError:
            logger.warning(
                f"Subscription {subscription.id} changed since version {subscription.version}; "
                f"keeping the newer record, the gateway change arrives by webhook"
            )

        async with self._session_factory() as session:
            return await SubscriptionRepository(session).get_by_id(subscription.id)

    async def _customer_id(self, tenant_id: str) -> Optional[str]:
        async with self._session_factory() as session:
            current = await SubscriptionRepository(session).find_current_by_tenant(tenant_id)
            if current and current.stripe_customer_id:
                return current.stripe_customer_id

            tenant = await TenantRepository(session).get(tenant_id)
            return tenant.stripe_customer_id if tenant else None

    @staticmethod
    def _response(message: str, subscription: Subscription) -> LifecycleResponse:
        return LifecycleResponse(
            message=message,
            plan=subscription.plan,
            cancel_at_period_end=subscription.cancel_at_period_end,
            current_period_end=subscription.current_period_end,
        )


def _format_invoice(invoice: dict[str, Any]) -> InvoiceSummary:
    return InvoiceSummary(
        id=invoice["id"],
        date=datetime.fromtimestamp(invoice["created"], tz=timezone.utc),
        description=invoice.get("description") or "MagnetHub Subscription",
        amount=f"${(invoice.get('amount_paid') or 0) / 100:.2f}",
        status=invoice.get("status"),
        pdf_url=invoice.get("invoice_pdf"),
    )
