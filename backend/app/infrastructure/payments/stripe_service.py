"""
Stripe Payment Service

Infrastructure adapter for the Stripe payment gateway.
Handles customers, checkout sessions, subscription changes, billing portal,
invoices and webhook signature verification.

The gateway owns pricing and proration. This service only requests changes;
local state is updated by the caller once a request was accepted.
"""

import json
import logging
from typing import Any, Optional

import stripe
from stripe import StripeError

from app.config.settings import get_settings
from app.domain.events import SubscriptionSnapshot, parse_subscription_object
from app.domain.plans import PlanType
from app.infrastructure.exceptions import (
    ConfigurationError,
    ExternalGatewayError,
    ValidationError,
)


logger = logging.getLogger(__name__)


def _user_message(error: StripeError) -> str:
    return getattr(error, "user_message", None) or str(error)


class StripeService:
    """
    Stripe payment processing service.

    All methods raise ``ExternalGatewayError`` when the gateway rejects or
    fails a call, and never touch the database.
    """

    def __init__(self):
        """Initialize Stripe with API key from settings."""
        settings = get_settings()
        self._api_key = settings.stripe_secret_key
        self._webhook_secret = settings.stripe_webhook_secret

        if self._api_key:
            stripe.api_key = self._api_key
        stripe.max_network_retries = settings.stripe_max_network_retries

        # Paid plan -> Stripe Price ID
        self._price_map: dict[PlanType, Optional[str]] = {
            PlanType.STARTER: settings.stripe_price_id_starter,
            PlanType.PRO: settings.stripe_price_id_pro,
            PlanType.AGENCY: settings.stripe_price_id_agency,
        }

    def _ensure_configured(self) -> None:
        if not self._api_key:
            raise ConfigurationError(
                "Stripe is not configured. Please set STRIPE_SECRET_KEY.",
                missing_keys=["STRIPE_SECRET_KEY"],
            )

    # =========================================================================
    # Price Mapping
    # =========================================================================

    def get_price_id_for_plan(self, plan: PlanType) -> str:
        """Get Stripe Price ID for a paid plan."""
        price_id = self._price_map.get(plan)
        if not price_id:
            raise ConfigurationError(
                f"No price configured for plan: {plan.value}",
                missing_keys=[f"STRIPE_PRICE_ID_{plan.value.upper()}"],
            )
        return price_id

    def get_plan_from_price_id(self, price_id: Optional[str]) -> PlanType:
        """Map a Stripe Price ID back to a plan. Unknown prices map to free."""
        for plan, configured in self._price_map.items():
            if price_id and configured == price_id:
                return plan
        return PlanType.FREE

    # =========================================================================
    # Customer Management
    # =========================================================================

    async def create_customer(
        self,
        tenant_id: str,
        email: str,
        name: Optional[str] = None,
    ) -> str:
        """
        Create a new Stripe customer.

        The idempotency key is derived from the tenant, so a retried request
        returns the customer created by the first attempt.

        Args:
            tenant_id: Internal tenant ID (stored in metadata)
            email: Customer email for receipts
            name: Optional customer name

        Returns:
            Stripe customer ID
        """
        self._ensure_configured()
        try:
            customer = stripe.Customer.create(
                email=email,
                name=name,
                metadata={
                    "tenant_id": tenant_id,
                    "source": "magnethub",
                },
                idempotency_key=f"customer-create-{tenant_id}",
            )
            logger.info(f"Created Stripe customer {customer.id} for tenant {tenant_id}")
            return customer.id

        except StripeError as e:
            logger.error(f"Failed to create Stripe customer: {e}")
            raise ExternalGatewayError(
                f"Failed to create customer: {_user_message(e)}",
                operation="create_customer",
                original_error=e,
            )

    async def get_customer_payment_method(self, customer_id: str) -> Optional[dict[str, Any]]:
        """
        Card summary of the customer's default payment method.

        Falls back to the most recent card when no default is set.

        Returns:
            ``{"brand", "last4", "exp_month", "exp_year"}`` or None
        """
        self._ensure_configured()
        try:
            customer = stripe.Customer.retrieve(
                customer_id,
                expand=["invoice_settings.default_payment_method"],
            ).to_dict()
            payment_method = (customer.get("invoice_settings") or {}).get("default_payment_method")
            if isinstance(payment_method, str):
                payment_method = stripe.PaymentMethod.retrieve(payment_method).to_dict()

            if not payment_method:
                methods = stripe.PaymentMethod.list(customer=customer_id, type="card", limit=1)
                payment_method = methods.data[0].to_dict() if methods.data else None

        except StripeError as e:
            logger.warning(f"Failed to retrieve payment method for {customer_id}: {e}")
            return None

        card = payment_method.get("card") if payment_method else None
        if not card:
            return None
        return {
            "brand": card.get("brand"),
            "last4": card.get("last4"),
            "exp_month": card.get("exp_month"),
            "exp_year": card.get("exp_year"),
        }

    # =========================================================================
    # Checkout Session
    # =========================================================================

    async def create_checkout_session(
        self,
        customer_id: str,
        tenant_id: str,
        plan: PlanType,
        success_url: str,
        cancel_url: str,
    ) -> dict[str, Optional[str]]:
        """
        Create a hosted Checkout Session for a paid plan.

        Tenant and plan are written to both the session and the subscription
        metadata so every later webhook can be traced back to the tenant.

        Returns:
            ``{"id", "url"}`` of the session
        """
        self._ensure_configured()
        price_id = self.get_price_id_for_plan(plan)

        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                payment_method_types=["card"],
                mode="subscription",
                line_items=[
                    {
                        "price": price_id,
                        "quantity": 1,
                    }
                ],
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={
                    "tenant_id": tenant_id,
                    "plan": plan.value,
                },
                subscription_data={
                    "metadata": {
                        "tenant_id": tenant_id,
                        "plan": plan.value,
                    },
                },
            )

            logger.info(f"Created checkout session {session.id} for tenant {tenant_id}, plan={plan.value}")
            return {"id": session.id, "url": session.url}

        except StripeError as e:
            logger.error(f"Failed to create checkout session: {e}")
            raise ExternalGatewayError(
                f"Failed to create checkout: {_user_message(e)}",
                operation="create_checkout_session",
                original_error=e,
            )

    # =========================================================================
    # Customer Portal
    # =========================================================================

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a Billing Portal session for self-service management.

        Returns:
            Portal URL
        """
        self._ensure_configured()
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
            logger.info(f"Created portal session for customer {customer_id}")
            return session.url

        except StripeError as e:
            logger.error(f"Failed to create portal session: {e}")
            raise ExternalGatewayError(
                f"Failed to create portal: {_user_message(e)}",
                operation="create_portal_session",
                original_error=e,
            )

    # =========================================================================
    # Subscription Queries and Changes
    # =========================================================================

    async def get_subscription_data(self, subscription_id: str) -> SubscriptionSnapshot:
        """
        Retrieve a subscription and map it to a snapshot.

        Raises:
            ExternalGatewayError: the gateway call failed
        """
        self._ensure_configured()
        try:
            subscription = stripe.Subscription.retrieve(subscription_id).to_dict()
        except StripeError as e:
            logger.error(f"Failed to retrieve subscription {subscription_id}: {e}")
            raise ExternalGatewayError(
                f"Failed to retrieve subscription: {_user_message(e)}",
                operation="get_subscription",
                original_error=e,
            )
        return parse_subscription_object(subscription)

    async def cancel_subscription(self, subscription_id: str) -> None:
        """Flag a subscription to cancel at the end of its period."""
        self._ensure_configured()
        try:
            stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
            logger.info(f"Cancelled subscription {subscription_id} at period end")

        except StripeError as e:
            logger.error(f"Failed to cancel subscription: {e}")
            raise ExternalGatewayError(
                f"Failed to cancel: {_user_message(e)}",
                operation="cancel_subscription",
                original_error=e,
            )

    async def reactivate_subscription(self, subscription_id: str) -> None:
        """Remove the cancel-at-period-end flag."""
        self._ensure_configured()
        try:
            stripe.Subscription.modify(subscription_id, cancel_at_period_end=False)
            logger.info(f"Reactivated subscription {subscription_id}")

        except StripeError as e:
            logger.error(f"Failed to reactivate subscription: {e}")
            raise ExternalGatewayError(
                f"Failed to reactivate: {_user_message(e)}",
                operation="reactivate_subscription",
                original_error=e,
            )

    async def change_plan(self, subscription_id: str, new_plan: PlanType) -> str:
        """
        Swap the subscription's price. Stripe invoices the prorated
        difference immediately.

        Returns:
            The new Stripe Price ID
        """
        self._ensure_configured()
        new_price_id = self.get_price_id_for_plan(new_plan)

        try:
            subscription = stripe.Subscription.retrieve(subscription_id).to_dict()
            items = (subscription.get("items") or {}).get("data") or []
            if not items:
                raise ValidationError(f"Subscription {subscription_id} has no items")

            metadata = dict(subscription.get("metadata") or {})
            metadata["plan"] = new_plan.value

            stripe.Subscription.modify(
                subscription_id,
                items=[{"id": items[0]["id"], "price": new_price_id}],
                proration_behavior="always_invoice",
                metadata=metadata,
            )
            logger.info(f"Changed subscription {subscription_id} to plan {new_plan.value}")
            return new_price_id

        except StripeError as e:
            logger.error(f"Failed to change plan: {e}")
            raise ExternalGatewayError(
                f"Failed to change plan: {_user_message(e)}",
                operation="change_plan",
                original_error=e,
            )

    # =========================================================================
    # Invoices
    # =========================================================================

    async def list_paid_invoices(self, customer_id: str, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent paid invoices for a customer."""
        self._ensure_configured()
        try:
            invoices = stripe.Invoice.list(customer=customer_id, limit=limit, status="paid")
            return [invoice.to_dict() for invoice in invoices.data]

        except StripeError as e:
            logger.error(f"Failed to list invoices: {e}")
            raise ExternalGatewayError(
                f"Failed to list invoices: {_user_message(e)}",
                operation="list_invoices",
                original_error=e,
            )

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    def construct_webhook_event(self, payload: bytes, signature: str) -> dict[str, Any]:
        """
        Verify webhook signature and return the event body.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header

        Returns:
            Event as a plain dict

        Raises:
            ValidationError: invalid payload or signature
            ConfigurationError: no webhook secret configured
        """
        if not self._webhook_secret:
            raise ConfigurationError(
                "Stripe webhook secret is not configured",
                missing_keys=["STRIPE_WEBHOOK_SECRET"],
            )

        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except ValueError as e:
            raise ValidationError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise ValidationError(f"Invalid signature: {e}")

        return json.loads(payload)


# =============================================================================
# Singleton Instance (Dependency Injection Ready)
# =============================================================================

_stripe_service_instance: Optional[StripeService] = None


def get_stripe_service() -> StripeService:
    """Get or create Stripe service singleton."""
    global _stripe_service_instance

    if _stripe_service_instance is None:
        _stripe_service_instance = StripeService()

    return _stripe_service_instance
