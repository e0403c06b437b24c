"""
Gateway Event Models

Stripe webhook bodies are loosely structured. They are mapped here, at the
boundary, to a small closed union of event kinds before reaching the
reconciler. Unknown event types become ``UnknownEvent`` and are ignored.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Mapping, Optional, Union

from pydantic import BaseModel, Field

from app.domain.subscription import SubscriptionStatus
from app.infrastructure.exceptions import ValidationError


CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

# Stripe has more statuses than we track locally.
_GATEWAY_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "canceled": SubscriptionStatus.CANCELED,
}


def map_gateway_status(value: Optional[str]) -> SubscriptionStatus:
    """Map a Stripe subscription status onto the local status set."""
    status = _GATEWAY_STATUS_MAP.get((value or "").lower())
    if status is None:
        raise ValidationError(f"Unknown subscription status '{value}'")
    return status


def _timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _first_item(subscription: Mapping[str, Any]) -> Mapping[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _ref_id(value: Any) -> Optional[str]:
    """Stripe references are either an ID string or an expanded object."""
    if isinstance(value, Mapping):
        return value.get("id")
    return value


# =============================================================================
# Event Models
# =============================================================================

class SubscriptionSnapshot(BaseModel):
    """Gateway view of one subscription at the time the event was sent."""
    subscription_id: str
    customer_id: Optional[str] = None
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    price_id: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def tenant_id(self) -> Optional[str]:
        return self.metadata.get("tenant_id")


class CheckoutCompletedEvent(BaseModel):
    kind: Literal["checkout_completed"] = "checkout_completed"
    event_id: Optional[str] = None
    event_type: str = CHECKOUT_COMPLETED
    session_id: Optional[str] = None
    tenant_id: Optional[str] = None
    plan: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    # Present only when the session was sent with the subscription expanded.
    subscription: Optional[SubscriptionSnapshot] = None
    amount_total: Optional[int] = None


class SubscriptionChangedEvent(BaseModel):
    kind: Literal["subscription_changed"] = "subscription_changed"
    event_id: Optional[str] = None
    event_type: str = SUBSCRIPTION_UPDATED
    created: bool = False
    subscription: SubscriptionSnapshot

    @property
    def subscription_id(self) -> str:
        return self.subscription.subscription_id


class SubscriptionDeletedEvent(BaseModel):
    kind: Literal["subscription_deleted"] = "subscription_deleted"
    event_id: Optional[str] = None
    event_type: str = SUBSCRIPTION_DELETED
    subscription_id: str
    customer_id: Optional[str] = None


class InvoiceEvent(BaseModel):
    kind: Literal["invoice"] = "invoice"
    event_id: Optional[str] = None
    event_type: str = INVOICE_PAID
    paid: bool
    invoice_id: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    amount: Optional[int] = None  # In cents
    billing_reason: Optional[str] = None
    card_brand: Optional[str] = None
    card_last4: Optional[str] = None
    card_exp_month: Optional[int] = None
    card_exp_year: Optional[int] = None
    failure_message: Optional[str] = None


class UnknownEvent(BaseModel):
    kind: Literal["unknown"] = "unknown"
    event_id: Optional[str] = None
    event_type: str


GatewayEvent = Annotated[
    Union[
        CheckoutCompletedEvent,
        SubscriptionChangedEvent,
        SubscriptionDeletedEvent,
        InvoiceEvent,
        UnknownEvent,
    ],
    Field(discriminator="kind"),
]


# =============================================================================
# Parsing
# =============================================================================

def parse_subscription_object(data: Mapping[str, Any]) -> SubscriptionSnapshot:
    """
    Build a snapshot from a Stripe subscription object.

    Period bounds live on the first subscription item in current API
    versions; older payloads carry them at the top level.
    """
    subscription_id = data.get("id")
    if not subscription_id:
        raise ValidationError("Subscription payload has no id")

    item = _first_item(data)
    period_start = _timestamp(item.get("current_period_start") or data.get("current_period_start"))
    period_end = _timestamp(item.get("current_period_end") or data.get("current_period_end"))
    if period_start is None or period_end is None:
        raise ValidationError(
            f"Subscription {subscription_id} payload has no billing period",
            details={"gateway_subscription_id": subscription_id},
        )

    price = item.get("price") or {}
    return SubscriptionSnapshot(
        subscription_id=subscription_id,
        customer_id=_ref_id(data.get("customer")),
        status=map_gateway_status(data.get("status")),
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=bool(data.get("cancel_at_period_end", False)),
        price_id=price.get("id") if isinstance(price, Mapping) else price,
        metadata={k: str(v) for k, v in (data.get("metadata") or {}).items()},
    )


def _parse_checkout(event_id: Optional[str], session: Mapping[str, Any]) -> CheckoutCompletedEvent:
    metadata = session.get("metadata") or {}
    raw_subscription = session.get("subscription")
    snapshot = None
    if isinstance(raw_subscription, Mapping):
        snapshot = parse_subscription_object(raw_subscription)

    return CheckoutCompletedEvent(
        event_id=event_id,
        session_id=session.get("id"),
        tenant_id=metadata.get("tenant_id"),
        plan=metadata.get("plan"),
        customer_id=_ref_id(session.get("customer")),
        subscription_id=_ref_id(raw_subscription),
        subscription=snapshot,
        amount_total=session.get("amount_total"),
    )


def _parse_invoice(event_id: Optional[str], event_type: str, invoice: Mapping[str, Any]) -> InvoiceEvent:
    invoice_id = invoice.get("id")
    if not invoice_id:
        raise ValidationError("Invoice payload has no id")

    paid = event_type != INVOICE_PAYMENT_FAILED

    # Newer API versions moved the subscription reference under parent.
    subscription_id = _ref_id(invoice.get("subscription"))
    if not subscription_id:
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        subscription_id = _ref_id(details.get("subscription"))

    card: Mapping[str, Any] = {}
    charge = invoice.get("charge")
    if isinstance(charge, Mapping):
        card = (charge.get("payment_method_details") or {}).get("card") or {}

    failure = invoice.get("last_payment_error") or {}

    return InvoiceEvent(
        event_id=event_id,
        event_type=event_type,
        paid=paid,
        invoice_id=invoice_id,
        customer_id=_ref_id(invoice.get("customer")),
        subscription_id=subscription_id,
        amount=invoice.get("amount_paid") if paid else invoice.get("amount_due"),
        billing_reason=invoice.get("billing_reason"),
        card_brand=card.get("brand"),
        card_last4=card.get("last4"),
        card_exp_month=card.get("exp_month"),
        card_exp_year=card.get("exp_year"),
        failure_message=failure.get("message") if isinstance(failure, Mapping) else None,
    )


def parse_gateway_event(payload: Mapping[str, Any]) -> GatewayEvent:
    """
    Map a verified Stripe event into the typed event union.

    Raises:
        ValidationError: a known event type with a malformed body
    """
    event_id = payload.get("id")
    event_type = payload.get("type") or ""
    data = (payload.get("data") or {}).get("object") or {}

    if event_type == CHECKOUT_COMPLETED:
        return _parse_checkout(event_id, data)

    if event_type in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
        return SubscriptionChangedEvent(
            event_id=event_id,
            event_type=event_type,
            created=event_type == SUBSCRIPTION_CREATED,
            subscription=parse_subscription_object(data),
        )

    if event_type == SUBSCRIPTION_DELETED:
        subscription_id = data.get("id")
        if not subscription_id:
            raise ValidationError("Deleted subscription payload has no id")
        return SubscriptionDeletedEvent(
            event_id=event_id,
            subscription_id=subscription_id,
            customer_id=_ref_id(data.get("customer")),
        )

    if event_type in (INVOICE_PAID, INVOICE_PAYMENT_SUCCEEDED, INVOICE_PAYMENT_FAILED):
        return _parse_invoice(event_id, event_type, data)

    return UnknownEvent(event_id=event_id, event_type=event_type or "unknown")
