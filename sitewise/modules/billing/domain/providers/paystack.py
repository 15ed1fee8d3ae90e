"""
Paystack webhook adapter.

Paystack signs the raw body with HMAC-SHA512 keyed by the secret key and
sends it in `x-paystack-signature`. The scheme carries no timestamp, so there
is no replay window; the idempotency ledger absorbs replays instead.
"""
import hashlib
import hmac
import json
from datetime import datetime
from typing import Any, Dict, Optional

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

PAYSTACK_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "non-renewing": SubscriptionStatus.ACTIVE,
    "attention": SubscriptionStatus.PAST_DUE,
    "cancelled": SubscriptionStatus.CANCELED,
    "completed": SubscriptionStatus.CANCELED,
}


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("paystack_invalid_date", date=value)
        return None


def _subscription_code(value: Any) -> Optional[str]:
    """`subscription` is either the expanded object or a bare code."""
    if isinstance(value, dict):
        return value.get("subscription_code")
    if isinstance(value, str):
        return value or None
    return None


class PaystackWebhookProvider(BillingWebhookProvider):
    provider = BillingProvider.PAYSTACK

    def __init__(self, config: BillingProviderConfig):
        self.secret_key = config.paystack.secret_key

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        """Verify Paystack webhook signature using HMAC-SHA512."""
        if not signature:
            logger.warning("paystack_webhook_missing_signature")
            return False

        if not self.secret_key:
            logger.error("paystack_secret_key_not_configured")
            return False

        expected = hmac.new(
            self.secret_key.encode(),
            payload,
            hashlib.sha512
        ).hexdigest()

        is_valid = hmac.compare_digest(expected, signature)
        if not is_valid:
            logger.warning("paystack_webhook_invalid_signature", provided_sig=signature[:8] + "...")

        return is_valid

    @staticmethod
    def derive_event_id(event_type: str, data: Dict[str, Any]) -> str:
        """
        Paystack deliveries have no event id. Key on event type plus the most
        specific object reference so retries of one delivery collide and
        distinct events on the same subscription do not.
        """
        reference = (
            data.get("reference")
            or data.get("id")
            or data.get("subscription_code")
            or _subscription_code(data.get("subscription"))
        )
        if reference is None:
            raise MalformedPayload(f"Paystack {event_type} event carries no reference")
        key_data = f"paystack:{event_type}:{reference}"
        return hashlib.sha256(key_data.encode()).hexdigest()[:32]

    def verify_and_parse(self, raw_body: bytes, signature: Optional[str]) -> CanonicalEvent:
        if not self.verify_signature(raw_body, signature):
            raise InvalidSignature("Invalid Paystack signature")

        try:
            event = json.loads(raw_body)
            event_type = event["event"]
            data = event.get("data") or {}
        except (ValueError, KeyError, TypeError) as e:
            raise MalformedPayload(f"Unreadable Paystack event: {e}") from None

        if not isinstance(data, dict):
            raise MalformedPayload("Paystack event data is not an object")

        event_id = self.derive_event_id(event_type, data)
        logger.info("paystack_webhook_received", paystack_event=event_type, event_id=event_id)

        mapper = {
            "subscription.create": self._map_subscription,
            "subscription.not_renew": self._map_subscription,
            "subscription.disable": self._map_subscription,
            "charge.success": self._map_charge_success,
            "invoice.payment_failed": self._map_invoice_failed,
        }.get(event_type)

        if mapper is None:
            return CanonicalEvent(provider=self.provider, event_id=event_id, kind=BillingEventKind.UNKNOWN)
        try:
            return mapper(event_id, event_type, data)
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning("paystack_webhook_unreadable_fields", paystack_event=event_type, event_id=event_id, error=str(e))
            raise MalformedPayload(f"Unreadable Paystack {event_type} fields: {e}") from None

    def _map_subscription(self, event_id: str, event_type: str, data: Dict[str, Any]) -> CanonicalEvent:
        metadata = data.get("metadata") or {}
        plan = data.get("plan") or {}

        if event_type == "subscription.disable":
            kind = BillingEventKind.SUBSCRIPTION_CANCELED
            status = SubscriptionStatus.CANCELED
            cancel_at_period_end = None
        elif event_type == "subscription.not_renew":
            kind = BillingEventKind.SUBSCRIPTION_UPDATED
            status = PAYSTACK_STATUS_MAP.get(data.get("status") or "")
            cancel_at_period_end = True
        else:
            kind = BillingEventKind.SUBSCRIPTION_CREATED
            status = PAYSTACK_STATUS_MAP.get(data.get("status") or "")
            cancel_at_period_end = None

        return CanonicalEvent(
            provider=self.provider,
            event_id=event_id,
            kind=kind,
            org_id=metadata.get("org_id"),
            subscription_id=data.get("subscription_code"),
            plan_code=metadata.get("plan_code") or plan.get("plan_code"),
            status=status,
            period_start=_parse_date(data.get("createdAt")),
            period_end=_parse_date(data.get("next_payment_date")),
            cancel_at_period_end=cancel_at_period_end,
            pending_order_id=metadata.get("pending_order_id"),
        )

    def _map_charge_success(self, event_id: str, _event_type: str, data: Dict[str, Any]) -> CanonicalEvent:
        metadata = data.get("metadata") or {}
        return CanonicalEvent(
            provider=self.provider,
            event_id=event_id,
            kind=BillingEventKind.INVOICE_PAID,
            org_id=metadata.get("org_id"),
            subscription_id=_subscription_code(data.get("subscription")),
            plan_code=metadata.get("plan_code"),
            pending_order_id=metadata.get("pending_order_id"),
            provider_checkout_id=data.get("reference"),
        )

    def _map_invoice_failed(self, event_id: str, _event_type: str, data: Dict[str, Any]) -> CanonicalEvent:
        metadata = data.get("metadata") or {}
        return CanonicalEvent(
            provider=self.provider,
            event_id=event_id,
            kind=BillingEventKind.INVOICE_PAYMENT_FAILED,
            org_id=metadata.get("org_id"),
            subscription_id=_subscription_code(data.get("subscription")),
            status=SubscriptionStatus.PAST_DUE,
        )
