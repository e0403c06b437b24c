"""
Payments Infrastructure Module

Stripe gateway adapter used by billing use cases and the webhook reconciler.
"""

from app.infrastructure.payments.stripe_service import StripeService, get_stripe_service

__all__ = ["StripeService", "get_stripe_service"]
