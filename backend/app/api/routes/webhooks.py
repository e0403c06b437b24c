"""
Stripe Webhook Handler

Verifies the Stripe signature, maps the payload to a typed event and hands
it to the reconciler.

Acknowledgement rules:
- 400 when the signature header is missing or invalid
- 200 for applied, ignored and anomalous events, so Stripe stops redelivering
- 5xx only when persistence fails, so Stripe retries later
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.api.dependencies import get_webhook_reconciler
from app.domain.events import parse_gateway_event
from app.domain.reconciliation import ReconcileOutcome
from app.infrastructure.exceptions import ValidationError
from app.infrastructure.payments.stripe_service import StripeService, get_stripe_service
from app.infrastructure.services.webhook_reconciler import WebhookReconciler


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_service: StripeService = Depends(get_stripe_service),
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
):
    """
    Handle Stripe webhook events.

    Returns ``{"received": true, "outcome": ...}``.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    if not signature:
        logger.warning("Webhook received without Stripe signature")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe signature",
        )

    try:
        raw_event = stripe_service.construct_webhook_event(payload, signature)
    except ValidationError as e:
        logger.warning(f"Webhook signature verification failed: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=e.message,
        )

    try:
        event = parse_gateway_event(raw_event)
    except ValidationError as e:
        logger.warning(f"Malformed {raw_event.get('type')} event {raw_event.get('id')}: {e.message}")
        return {"received": True, "outcome": ReconcileOutcome.DISCARDED.value}

    logger.info(f"Received Stripe event {event.event_type} ({event.event_id})")
    outcome = await reconciler.handle_webhook_event(event)
    return {"received": True, "outcome": outcome.value}
