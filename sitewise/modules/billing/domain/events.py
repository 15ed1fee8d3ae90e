"""
Canonical billing vocabulary shared by every provider adapter and the reconciler.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class BillingProvider(str, Enum):
    STRIPE = "stripe"
    PAYSTACK = "paystack"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""
    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"  # terminal


class BillingEventKind(str, Enum):
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    UNKNOWN = "unknown"


ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.INCOMPLETE: frozenset({
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELED,
    }),
    SubscriptionStatus.TRIALING: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED,
    }),
    SubscriptionStatus.ACTIVE: frozenset({
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED,
    }),
    SubscriptionStatus.PAST_DUE: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELED,
    }),
    SubscriptionStatus.CANCELED: frozenset(),
}


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return current == target or target in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True)
class CanonicalEvent:
    """
    Provider-agnostic webhook event.

    Optional fields are None when the provider payload did not carry them;
    the reconciler never overwrites stored state with a None.
    """
    provider: BillingProvider
    event_id: str
    kind: BillingEventKind
    org_id: Optional[str] = None
    subscription_id: Optional[str] = None
    plan_code: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None
    pending_order_id: Optional[str] = None
    provider_checkout_id: Optional[str] = None
