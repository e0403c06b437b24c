"""
Reconciliation Rules

Pure decisions the webhook reconciler makes before touching the store.

Stripe does not send a sequence number with subscription events, so the
billing period end orders them: an update describing an older period than
the stored one is a late retry and must not be applied.
"""

from enum import Enum

from app.domain.events import SubscriptionSnapshot
from app.domain.subscription import Subscription, SubscriptionStatus


class ReconcileOutcome(str, Enum):
    """What the reconciler did with an event."""
    APPLIED = "applied"
    IGNORED = "ignored"
    DISCARDED = "discarded"


# Statuses a subscription passes through before it is first active.
_PRE_ACTIVE = frozenset({SubscriptionStatus.INCOMPLETE, SubscriptionStatus.TRIALING})


def is_stale_update(stored: Subscription, incoming: SubscriptionSnapshot) -> bool:
    """
    True if ``incoming`` is older than what is already stored.

    - canceled is terminal: nothing but another cancel may follow it
    - an older period end always loses
    - on the same period, an active record does not fall back to a
      pre-activation status
    """
    if stored.status == SubscriptionStatus.CANCELED:
        return incoming.status != SubscriptionStatus.CANCELED

    if incoming.current_period_end < stored.current_period_end:
        return True

    if incoming.current_period_end == stored.current_period_end:
        return stored.status == SubscriptionStatus.ACTIVE and incoming.status in _PRE_ACTIVE

    return False


def period_advanced(stored: Subscription, incoming: SubscriptionSnapshot) -> bool:
    """True if the gateway moved the subscription into a new billing period."""
    return incoming.current_period_start > stored.current_period_start
