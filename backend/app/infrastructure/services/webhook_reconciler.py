"""
Webhook Reconciler

Applies verified Stripe events to the subscription store. This is the only
code path that makes a subscription definitively active, past due or
canceled, and the only writer of the tenant's current-subscription pointer.

Events are keyed by the Stripe subscription ID and may arrive more than once
and out of order. Every handler is idempotent:

- checkout replay finds the record it created and stops
- subscription updates older than the stored period are discarded
- deletion of an unknown or already canceled subscription is a no-op

Handlers run inside one transaction holding the tenant row lock. A lost
write race rolls back and the whole event is retried.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.config.settings import get_settings
from app.domain.events import (
    CheckoutCompletedEvent,
    GatewayEvent,
    InvoiceEvent,
    SubscriptionChangedEvent,
    SubscriptionDeletedEvent,
    SubscriptionSnapshot,
    UnknownEvent,
)
from app.domain.plans import PlanType, parse_plan
from app.domain.reconciliation import ReconcileOutcome, is_stale_update, period_advanced
from app.domain.subscription import (
    GatewayLinkage,
    PaymentSnapshot,
    Subscription,
    SubscriptionSource,
    SubscriptionStatus,
    utcnow,
)
from app.infrastructure.db.database import get_session_context
from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from app.infrastructure.db.repositories.tenant_repository import TenantRepository
from app.infrastructure.exceptions import (
    DatabaseError,
    ReconciliationAnomaly,
    StaleRecordError,
    ValidationError,
)
from app.infrastructure.services.billing_service import SessionFactory


logger = logging.getLogger(__name__)

_ACTIVE = SubscriptionStatus.ACTIVE
_CANCELED = SubscriptionStatus.CANCELED


class WebhookReconciler:
    """
    Single entry point for gateway events.

    Args:
        stripe_service: Gateway adapter (price mapping, subscription fetch)
        session_factory: Opens one unit of work (commit on exit)
        max_attempts: Bound on whole-event retries after a write conflict
    """

    def __init__(
        self,
        stripe_service,
        session_factory: SessionFactory = get_session_context,
        max_attempts: Optional[int] = None,
    ):
        self._stripe = stripe_service
        self._session_factory = session_factory
        self._max_attempts = max_attempts or get_settings().reconcile_max_attempts

    async def handle_webhook_event(self, event: GatewayEvent) -> ReconcileOutcome:
        """
        Apply one event.

        Anomalies are logged and reported as ``DISCARDED``; they never
        propagate, so the transport acknowledges them.

        Raises:
            DatabaseError: persistence failed; the sender should redeliver
        """
        if isinstance(event, UnknownEvent):
            logger.info(f"Ignoring unhandled event type {event.event_type} ({event.event_id})")
            return ReconcileOutcome.IGNORED

        handlers = {
            CheckoutCompletedEvent: self._on_checkout_completed,
            SubscriptionChangedEvent: self._on_subscription_changed,
            SubscriptionDeletedEvent: self._on_subscription_deleted,
            InvoiceEvent: self._on_invoice,
        }
        handler = handlers[type(event)]

        for attempt in range(1, self._max_attempts + 1):
            try:
                outcome = await handler(event)
                logger.info(f"Event {event.event_type} ({event.event_id}) {outcome.value}")
                return outcome

            except ReconciliationAnomaly as e:
                logger.warning(f"Discarded {event.event_type} ({event.event_id}): {e.message}")
                return ReconcileOutcome.DISCARDED

            except (IntegrityError, StaleRecordError) as e:
                logger.warning(
                    f"Write conflict on {event.event_type} ({event.event_id}), "
                    f"attempt {attempt}/{self._max_attempts}: {e}"
                )

            except SQLAlchemyError as e:
                logger.error(f"Database error on {event.event_type} ({event.event_id}): {e}")
                raise DatabaseError(
                    f"Failed to reconcile {event.event_type}",
                    operation="handle_webhook_event",
                    table="subscriptions",
                    original_error=e,
                )

        logger.error(f"Giving up on {event.event_type} ({event.event_id}) after {self._max_attempts} attempts")
        raise DatabaseError(
            f"Failed to reconcile {event.event_type} after {self._max_attempts} attempts",
            operation="handle_webhook_event",
            table="subscriptions",
        )

    # =========================================================================
    # Checkout
    # =========================================================================

    async def _on_checkout_completed(self, event: CheckoutCompletedEvent) -> ReconcileOutcome:
        if not event.tenant_id or not event.subscription_id:
            raise ReconciliationAnomaly(
                "Checkout session has no tenant or subscription reference",
                gateway_subscription_id=event.subscription_id,
                event_type=event.event_type,
            )

        # Gateway read happens before the transaction opens.
        snapshot = event.subscription or await self._stripe.get_subscription_data(event.subscription_id)
        plan = self._resolve_plan(snapshot, event.plan)

        async with self._session_factory() as session:
            subs = SubscriptionRepository(session)
            tenants = TenantRepository(session)

            await tenants.lock(event.tenant_id)
            if await subs.get_by_stripe_subscription_id(snapshot.subscription_id):
                logger.info(f"Checkout for subscription {snapshot.subscription_id} already reconciled")
                return ReconcileOutcome.IGNORED

            return await self._create_from_snapshot(
                subs,
                tenants,
                tenant_id=event.tenant_id,
                plan=plan,
                snapshot=snapshot,
                source=SubscriptionSource.STRIPE_CHECKOUT,
                customer_id=event.customer_id,
            )

    # =========================================================================
    # Subscription Created / Updated
    # =========================================================================

    async def _on_subscription_changed(self, event: SubscriptionChangedEvent) -> ReconcileOutcome:
        snapshot = event.subscription

        async with self._session_factory() as session:
            subs = SubscriptionRepository(session)
            tenants = TenantRepository(session)

            existing = await subs.get_by_stripe_subscription_id(snapshot.subscription_id)
            tenant_id = existing.tenant_id if existing else await self._resolve_tenant(tenants, snapshot)
            if not tenant_id:
                raise ReconciliationAnomaly(
                    f"Cannot resolve tenant for subscription {snapshot.subscription_id}",
                    gateway_subscription_id=snapshot.subscription_id,
                    event_type=event.event_type,
                )

            await tenants.lock(tenant_id)
            # Re-read under the lock; a concurrent checkout may have created it.
            existing = await subs.get_by_stripe_subscription_id(snapshot.subscription_id)

            if existing is None:
                if snapshot.status == _CANCELED:
                    logger.info(f"Subscription {snapshot.subscription_id} unknown locally and already canceled")
                    return ReconcileOutcome.IGNORED

                plan = self._resolve_plan(snapshot, snapshot.metadata.get("plan"))
                return await self._create_from_snapshot(
                    subs,
                    tenants,
                    tenant_id=tenant_id,
                    plan=plan,
                    snapshot=snapshot,
                    source=SubscriptionSource.STRIPE_WEBHOOK,
                )

            return await self._apply_update(subs, tenants, existing, snapshot, event.event_type)

    async def _apply_update(
        self,
        subs: SubscriptionRepository,
        tenants: TenantRepository,
        existing: Subscription,
        snapshot: SubscriptionSnapshot,
        event_type: str,
    ) -> ReconcileOutcome:
        if existing.status == _CANCELED and snapshot.status == _CANCELED:
            return ReconcileOutcome.IGNORED

        if is_stale_update(existing, snapshot):
            raise ReconciliationAnomaly(
                f"Stale update for subscription {snapshot.subscription_id}: "
                f"incoming {snapshot.status.value} ending {snapshot.current_period_end.isoformat()}, "
                f"stored {existing.status.value} ending {existing.current_period_end.isoformat()}",
                gateway_subscription_id=snapshot.subscription_id,
                event_type=event_type,
            )

        plan = self._resolve_plan(snapshot, snapshot.metadata.get("plan"), fallback=existing.plan)
        now = utcnow()
        values = {
            "status": snapshot.status.value,
            "plan": plan.value,
            "stripe_price_id": snapshot.price_id or existing.stripe_price_id,
            "stripe_customer_id": snapshot.customer_id or existing.stripe_customer_id,
            "current_period_start": snapshot.current_period_start,
            "current_period_end": snapshot.current_period_end,
            "cancel_at_period_end": snapshot.cancel_at_period_end,
        }
        if _unchanged(existing, values):
            return ReconcileOutcome.IGNORED

        activating = snapshot.status == _ACTIVE and existing.status != _ACTIVE
        canceling = snapshot.status == _CANCELED

        if activating:
            await subs.terminate_active(existing.tenant_id, now, exclude_id=existing.id)
        if canceling:
            values.update(canceled_at=existing.canceled_at or now, ended_at=now)

        await subs.compare_and_set(existing.id, existing.version, values)
        logger.info(
            f"Subscription {existing.id} updated from gateway: "
            f"{existing.status.value}/{existing.plan.value} -> {snapshot.status.value}/{plan.value}"
        )

        if period_advanced(existing, snapshot):
            if await subs.reset_usage_for_new_period(existing.id, existing.current_period_end, now):
                logger.info(f"Reset usage for subscription {existing.id} on new period")

        if activating:
            await tenants.set_current_subscription(existing.tenant_id, existing.id)
        if canceling:
            await self._provision_fallback(subs, tenants, existing.tenant_id, now)

        return ReconcileOutcome.APPLIED

    # =========================================================================
    # Subscription Deleted
    # =========================================================================

    async def _on_subscription_deleted(self, event: SubscriptionDeletedEvent) -> ReconcileOutcome:
        async with self._session_factory() as session:
            subs = SubscriptionRepository(session)
            tenants = TenantRepository(session)

            existing = await subs.get_by_stripe_subscription_id(event.subscription_id)
            if existing is None:
                logger.warning(f"Deleted subscription {event.subscription_id} not found locally")
                return ReconcileOutcome.IGNORED

            await tenants.lock(existing.tenant_id)
            existing = await subs.get_by_id(existing.id)
            now = utcnow()

            if existing.status != _CANCELED:
                await subs.compare_and_set(
                    existing.id,
                    existing.version,
                    {
                        "status": _CANCELED.value,
                        "canceled_at": existing.canceled_at or now,
                        "ended_at": now,
                        "cancel_at_period_end": False,
                    },
                )
                logger.info(f"Subscription {existing.id} canceled (gateway deleted {event.subscription_id})")
                await self._provision_fallback(subs, tenants, existing.tenant_id, now)
                return ReconcileOutcome.APPLIED

            if await self._provision_fallback(subs, tenants, existing.tenant_id, now):
                return ReconcileOutcome.APPLIED
            return ReconcileOutcome.IGNORED

    # =========================================================================
    # Invoices
    # =========================================================================

    async def _on_invoice(self, event: InvoiceEvent) -> ReconcileOutcome:
        """Record last-known payment details. Never changes status."""
        if not event.subscription_id:
            logger.info(f"Invoice {event.invoice_id} is not tied to a subscription")
            return ReconcileOutcome.IGNORED

        if event.paid:
            logger.info(f"Invoice {event.invoice_id} paid: {event.amount} ({event.billing_reason})")
        else:
            logger.warning(f"Invoice {event.invoice_id} payment failed: {event.failure_message}")

        async with self._session_factory() as session:
            subs = SubscriptionRepository(session)
            existing = await subs.get_by_stripe_subscription_id(event.subscription_id)
            if existing is None:
                logger.warning(f"Invoice {event.invoice_id} references unknown subscription {event.subscription_id}")
                return ReconcileOutcome.IGNORED

            await subs.record_payment(
                existing.id,
                PaymentSnapshot(
                    invoice_id=event.invoice_id,
                    status="paid" if event.paid else "failed",
                    amount=event.amount,
                    card_brand=event.card_brand,
                    card_last4=event.card_last4,
                    card_exp_month=event.card_exp_month,
                    card_exp_year=event.card_exp_year,
                ),
            )
            return ReconcileOutcome.APPLIED

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _create_from_snapshot(
        self,
        subs: SubscriptionRepository,
        tenants: TenantRepository,
        tenant_id: str,
        plan: PlanType,
        snapshot: SubscriptionSnapshot,
        source: SubscriptionSource,
        customer_id: Optional[str] = None,
    ) -> ReconcileOutcome:
        """Mirror a gateway subscription we have no record of yet."""
        customer_id = snapshot.customer_id or customer_id
        if not customer_id:
            raise ReconciliationAnomaly(
                f"Subscription {snapshot.subscription_id} has no customer",
                gateway_subscription_id=snapshot.subscription_id,
            )

        now = utcnow()
        if snapshot.status == _ACTIVE:
            await subs.terminate_active(tenant_id, now)

        created = await subs.create_paid(
            tenant_id,
            plan,
            GatewayLinkage(
                customer_id=customer_id,
                subscription_id=snapshot.subscription_id,
                price_id=snapshot.price_id,
                current_period_start=snapshot.current_period_start,
                current_period_end=snapshot.current_period_end,
                status=snapshot.status,
                cancel_at_period_end=snapshot.cancel_at_period_end,
            ),
            source=source,
            now=now,
        )

        if created.status == _ACTIVE:
            await tenants.set_current_subscription(tenant_id, created.id)
        return ReconcileOutcome.APPLIED

    async def _provision_fallback(
        self,
        subs: SubscriptionRepository,
        tenants: TenantRepository,
        tenant_id: str,
        now: datetime,
    ) -> bool:
        """Point the tenant at its active record, creating a free one if none is left."""
        current = await subs.find_current_by_tenant(tenant_id)
        if current:
            await tenants.set_current_subscription(tenant_id, current.id)
            return False

        fallback = await subs.create_free(tenant_id, now)
        await tenants.set_current_subscription(tenant_id, fallback.id)
        logger.info(f"Provisioned free fallback {fallback.id} for tenant {tenant_id}")
        return True

    async def _resolve_tenant(
        self,
        tenants: TenantRepository,
        snapshot: SubscriptionSnapshot,
    ) -> Optional[str]:
        """Find the tenant by Stripe customer, falling back to metadata."""
        if snapshot.customer_id:
            tenant = await tenants.get_by_customer_id(snapshot.customer_id)
            if tenant:
                return tenant.id

        tenant_id = snapshot.tenant_id
        if tenant_id and snapshot.customer_id:
            await tenants.set_customer_id_if_absent(tenant_id, snapshot.customer_id)
        return tenant_id

    def _resolve_plan(
        self,
        snapshot: SubscriptionSnapshot,
        metadata_plan: Optional[str],
        fallback: Optional[PlanType] = None,
    ) -> PlanType:
        """
        Plan from the price ID, then from metadata, then the stored plan.

        The price ID is authoritative; metadata can lag behind a plan change
        made in the billing portal.
        """
        plan = self._stripe.get_plan_from_price_id(snapshot.price_id)
        if plan != PlanType.FREE:
            return plan

        logger.warning(f"Unknown price {snapshot.price_id} on subscription {snapshot.subscription_id}")
        if metadata_plan:
            try:
                return parse_plan(metadata_plan, paid_only=True)
            except ValidationError as e:
                logger.warning(f"Ignoring metadata plan on {snapshot.subscription_id}: {e.message}")

        if fallback and fallback != PlanType.FREE:
            return fallback

        raise ReconciliationAnomaly(
            f"Cannot determine plan for subscription {snapshot.subscription_id}",
            gateway_subscription_id=snapshot.subscription_id,
        )


def _unchanged(existing: Subscription, values: dict) -> bool:
    current = {
        "status": existing.status.value,
        "plan": existing.plan.value,
        "stripe_price_id": existing.stripe_price_id,
        "stripe_customer_id": existing.stripe_customer_id,
        "current_period_start": existing.current_period_start,
        "current_period_end": existing.current_period_end,
        "cancel_at_period_end": existing.cancel_at_period_end,
    }
    return current == values
