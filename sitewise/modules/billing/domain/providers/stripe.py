"""
Stripe webhook adapter.

Handles the snapshot events the Stripe dashboard is configured to send:
checkout.session.completed, customer.subscription.created/updated/deleted,
invoice.paid and invoice.payment_failed. Anything else becomes an `unknown`
canonical event.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
import structlog

from sitewise.modules.billing.domain.config import BillingProviderConfig
from sitewise.modules.billing.domain.events import (
    BillingEventKind,
    BillingProvider,
    CanonicalEvent,
    SubscriptionStatus,
)
from sitewise.modules.billing.domain.providers.base import BillingWebhookProvider
from sitewise.shared.core.exceptions import InvalidSignature, MalformedPayload

logger = structlog.get_logger()

STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "trialing": SubscriptionStatus.TRIALING,
}


def map_stripe_status(status: Optional[str]) -> Optional[SubscriptionStatus]:
    """Unmapped Stripe statuses (unpaid, paused, incomplete_expired) mean no status change."""
    return STRIPE_STATUS_MAP.get(status or "")


def _epoch(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _ref_id(value: Any) -> Optional[str]:
    """Stripe fields are either an id string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id")
    return None


class StripeWebhookProvider(BillingWebhookProvider):
    provider = BillingProvider.STRIPE

    def __init__(self, config: BillingProviderConfig):
        self.webhook_secret = config.stripe.webhook_secret
        self.tolerance = config.webhook_tolerance_seconds

    def verify_and_parse(self, raw_body: bytes, signature: Optional[str]) -> CanonicalEvent:
        if not signature:
            logger.warning("stripe_webhook_missing_signature")
            raise InvalidSignature("Missing Stripe-Signature header")
        if not self.webhook_secret:
            logger.error("stripe_webhook_secret_not_configured")
            raise InvalidSignature("Stripe webhook secret not configured")

        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError:
            raise InvalidSignature("Stripe payload is not valid UTF-8") from None

        try:
            stripe.WebhookSignature.verify_header(payload, signature, self.webhook_secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            logger.warning("stripe_webhook_invalid_signature", error=str(e))
            raise InvalidSignature(str(e)) from None

        try:
            event = json.loads(payload)
            event_id = event["id"]
            event_type = event["type"]
            obj = event["data"]["object"]
        except (ValueError, KeyError, TypeError) as e:
            raise MalformedPayload(f"Unreadable Stripe event: {e}") from None

        if not isinstance(obj, dict):
            raise MalformedPayload("Stripe event data.object is not an object")

        logger.info("stripe_webhook_received", stripe_event=event_type, event_id=event_id)

        mapper = {
            "checkout.session.completed": self._map_checkout_completed,
            "customer.subscription.created": self._map_subscription,
            "customer.subscription.updated": self._map_subscription,
            "customer.subscription.deleted": self._map_subscription,
            "invoice.paid": self._map_invoice,
            "invoice.payment_failed": self._map_invoice,
        }.get(event_type)

        if mapper is None:
            return CanonicalEvent(provider=self.provider, event_id=event_id, kind=BillingEventKind.UNKNOWN)
        try:
            return mapper(event_id, event_type, obj)
        except (ValueError, TypeError, AttributeError, OverflowError) as e:
            logger.warning("stripe_webhook_unreadable_fields", stripe_event=event_type, event_id=event_id, error=str(e))
            raise MalformedPayload(f"Unreadable Stripe {event_type} fields: {e}") from None

    def _map_checkout_completed(self, event_id: str, _event_type: str, session: Dict[str, Any]) -> CanonicalEvent:
        metadata = session.get("metadata") or {}
        return CanonicalEvent(
            provider=self.provider,
            event_id=event_id,
            kind=BillingEventKind.SUBSCRIPTION_CREATED,
            org_id=metadata.get("orgId"),
            subscription_id=_ref_id(session.get("subscription")),
            plan_code=metadata.get("planCode"),
            status=SubscriptionStatus.ACTIVE,
            pending_order_id=metadata.get("pendingOrderId"),
            provider_checkout_id=session.get("id"),
        )

    def _map_subscription(self, event_id: str, event_type: str, sub: Dict[str, Any]) -> CanonicalEvent:
        metadata = sub.get("metadata") or {}
        plan_code = metadata.get("planCode")
        if plan_code is None:
            items = (sub.get("items") or {}).get("data") or []
            if items:
                plan_code = ((items[0] or {}).get("price") or {}).get("nickname")

        if event_type == "customer.subscription.deleted":
            kind = BillingEventKind.SUBSCRIPTION_CANCELED
            status = SubscriptionStatus.CANCELED
        else:
            kind = (
                BillingEventKind.SUBSCRIPTION_CREATED
                if event_type == "customer.subscription.created"
                else BillingEventKind.SUBSCRIPTION_UPDATED
            )
            status = map_stripe_status(sub.get("status"))

        return CanonicalEvent(
            provider=self.provider,
            event_id=event_id,
            kind=kind,
            org_id=metadata.get("orgId"),
            subscription_id=sub.get("id"),
            plan_code=plan_code,
            status=status,
            period_start=_epoch(sub.get("current_period_start")),
            period_end=_epoch(sub.get("current_period_end")),
            cancel_at_period_end=sub.get("cancel_at_period_end"),
            pending_order_id=metadata.get("pendingOrderId"),
        )

    def _map_invoice(self, event_id: str, event_type: str, invoice: Dict[str, Any]) -> CanonicalEvent:
        metadata = invoice.get("metadata") or {}
        failed = event_type == "invoice.payment_failed"
        return CanonicalEvent(
            provider=self.provider,
            event_id=event_id,
            kind=BillingEventKind.INVOICE_PAYMENT_FAILED if failed else BillingEventKind.INVOICE_PAID,
            org_id=metadata.get("orgId"),
            subscription_id=_ref_id(invoice.get("subscription")),
            status=SubscriptionStatus.PAST_DUE if failed else None,
            pending_order_id=metadata.get("pendingOrderId"),
            provider_checkout_id=metadata.get("providerCheckoutId"),
        )
