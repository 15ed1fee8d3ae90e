"""
Billing Reconciler

Applies canonical webhook events to subscription state exactly once per
(provider, event id), no matter how often the provider redelivers.

Flow per delivery:
1. The provider adapter verifies the signature and builds a `CanonicalEvent`.
2. Inside one transaction, a `BillingEvent` ledger row is inserted in a
   savepoint. A unique-key violation means another delivery (earlier or
   racing) owns the event, so this one is a successful no-op.
3. The subscription row is locked and the event applied through the
   kind-specific handler; the ledger row and the state change commit together.
   An event that cannot be applied yet raises `BillingEventDeferred`, which
   rolls the ledger row back so the provider's retry is processed afresh.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sitewise.models.billing import (
    BillingEvent,
    BillingEventOutcome,
    PendingOrder,
    PendingOrderStatus,
    Subscription,
)
from sitewise.modules.billing.domain.events import (
    BillingEventKind,
    BillingProvider,
    CanonicalEvent,
    SubscriptionStatus,
    can_transition,
)
from sitewise.modules.billing.domain.providers.base import BillingWebhookProvider
from sitewise.shared.core.exceptions import BillingEventDeferred, InvalidSignature, MalformedPayload
from sitewise.shared.core.logging import audit_log
from sitewise.shared.core.ops_metrics import BILLING_WEBHOOKS_TOTAL
from sitewise.shared.db.base import utcnow

logger = structlog.get_logger()


class WebhookStatus(str, Enum):
    OK = "ok"
    IGNORED_DUPLICATE = "ignored_duplicate"
    IGNORED_UNKNOWN = "ignored_unknown"


@dataclass(frozen=True)
class WebhookResult:
    status: WebhookStatus
    event_id: str


def _as_uuid(value: Optional[str]) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


class BillingReconciler:
    def __init__(
        self,
        session_maker: async_sessionmaker | None = None,
        providers: Dict[BillingProvider, BillingWebhookProvider] | None = None,
    ):
        if session_maker is None:
            from sitewise.shared.db.session import async_session_maker
            session_maker = async_session_maker
        if providers is None:
            from sitewise.modules.billing.domain.providers.factory import build_webhook_providers
            providers = build_webhook_providers()
        self.session_maker = session_maker
        self.providers = providers

    async def handle(self, provider: BillingProvider | str, raw_body: bytes, signature: Optional[str]) -> WebhookResult:
        """Verify, normalise and apply one webhook delivery."""
        try:
            provider = BillingProvider(provider)
        except ValueError:
            raise MalformedPayload(f"Unknown billing provider '{provider}'") from None

        adapter = self.providers.get(provider)
        if adapter is None:
            raise MalformedPayload(f"Billing provider '{provider.value}' is not configured")

        try:
            event = adapter.verify_and_parse(raw_body, signature)
        except InvalidSignature:
            BILLING_WEBHOOKS_TOTAL.labels(provider=provider.value, outcome="invalid_signature").inc()
            raise
        except MalformedPayload:
            BILLING_WEBHOOKS_TOTAL.labels(provider=provider.value, outcome="malformed").inc()
            raise

        try:
            result = await self.apply(event)
        except BillingEventDeferred:
            BILLING_WEBHOOKS_TOTAL.labels(provider=provider.value, outcome="deferred").inc()
            raise
        BILLING_WEBHOOKS_TOTAL.labels(provider=provider.value, outcome=result.status.value).inc()
        return result

    async def apply(self, event: CanonicalEvent) -> WebhookResult:
        outcome = (
            BillingEventOutcome.IGNORED_UNKNOWN
            if event.kind == BillingEventKind.UNKNOWN
            else BillingEventOutcome.APPLIED
        )

        async with self.session_maker() as session:
            async with session.begin():
                ledger = BillingEvent(
                    provider=event.provider.value,
                    event_id=event.event_id,
                    kind=event.kind.value,
                    org_id=_as_uuid(event.org_id),
                    subscription_id=event.subscription_id,
                    outcome=outcome.value,
                )
                try:
                    async with session.begin_nested():
                        session.add(ledger)
                        await session.flush()
                except IntegrityError:
                    logger.info(
                        "billing_webhook_duplicate_ignored",
                        provider=event.provider.value,
                        event_id=event.event_id,
                    )
                    return WebhookResult(WebhookStatus.IGNORED_DUPLICATE, event.event_id)

                if outcome == BillingEventOutcome.IGNORED_UNKNOWN:
                    logger.info(
                        "billing_webhook_unknown_ignored",
                        provider=event.provider.value,
                        event_id=event.event_id,
                    )
                    return WebhookResult(WebhookStatus.IGNORED_UNKNOWN, event.event_id)

                handler = _DISPATCH[event.kind]
                applied = await handler(self, session, event)
                if not applied:
                    ledger.outcome = BillingEventOutcome.IGNORED_DUPLICATE.value

        if not applied:
            return WebhookResult(WebhookStatus.IGNORED_DUPLICATE, event.event_id)
        return WebhookResult(WebhookStatus.OK, event.event_id)

    # --- lookups ---

    async def _lock_subscription(self, session: AsyncSession, provider_sub_id: Optional[str]) -> Optional[Subscription]:
        if not provider_sub_id:
            return None
        result = await session.execute(
            select(Subscription)
            .where(Subscription.provider_sub_id == provider_sub_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _find_pending_order(self, session: AsyncSession, event: CanonicalEvent) -> Optional[PendingOrder]:
        """Pending order id first, then checkout id, then subscription id."""
        pending_id = _as_uuid(event.pending_order_id)
        if pending_id is not None:
            order = await session.get(PendingOrder, pending_id, with_for_update=True)
            if order is not None:
                return order

        candidates = [
            (PendingOrder.provider_checkout_id, event.provider_checkout_id),
            (PendingOrder.provider_subscription_id, event.subscription_id),
        ]
        for column, value in candidates:
            if not value:
                continue
            result = await session.execute(
                select(PendingOrder)
                .where(PendingOrder.provider == event.provider.value, column == value)
                .order_by(PendingOrder.created_at.desc())
                .limit(1)
                .with_for_update()
            )
            order = result.scalar_one_or_none()
            if order is not None:
                return order
        return None

    # --- state changes ---

    def _apply_status(self, sub: Subscription, target: Optional[SubscriptionStatus], event: CanonicalEvent) -> None:
        if target is None:
            return
        current = SubscriptionStatus(sub.status)
        if can_transition(current, target):
            sub.status = target.value
            return
        logger.warning(
            "subscription_transition_rejected",
            provider_sub_id=sub.provider_sub_id,
            event_id=event.event_id,
            current_status=current.value,
            requested_status=target.value,
        )

    def _apply_fields(self, sub: Subscription, event: CanonicalEvent) -> None:
        """Overwrite only the fields the event carries."""
        if event.plan_code is not None:
            sub.plan_code = event.plan_code
        if event.period_start is not None:
            sub.period_start = event.period_start
        if event.period_end is not None:
            sub.period_end = event.period_end
        if event.cancel_at_period_end is not None:
            sub.cancel_at_period_end = event.cancel_at_period_end

    def _complete_pending_order(self, order: Optional[PendingOrder], event: CanonicalEvent, canceled: bool) -> None:
        if order is None or order.status != PendingOrderStatus.PENDING.value:
            return
        order.status = (PendingOrderStatus.CANCELLED if canceled else PendingOrderStatus.COMPLETED).value
        order.completed_at = utcnow()
        if event.subscription_id and not order.provider_subscription_id:
            order.provider_subscription_id = event.subscription_id
        if event.provider_checkout_id and not order.provider_checkout_id:
            order.provider_checkout_id = event.provider_checkout_id
        logger.info("pending_order_resolved", pending_order_id=str(order.id), status=order.status)

    def _already_applied(self, sub: Optional[Subscription], event: CanonicalEvent) -> bool:
        if sub is not None and sub.last_event_id == event.event_id:
            logger.info(
                "billing_webhook_duplicate_ignored",
                provider=event.provider.value,
                event_id=event.event_id,
                guard="last_event_id",
            )
            return True
        return False

    async def _upsert_subscription(
        self,
        session: AsyncSession,
        event: CanonicalEvent,
        status: Optional[SubscriptionStatus],
        canceled: bool = False,
    ) -> bool:
        if not event.subscription_id:
            logger.warning("billing_event_missing_subscription_id", event_id=event.event_id, kind=event.kind.value)
            return True

        sub = await self._lock_subscription(session, event.subscription_id)
        if self._already_applied(sub, event):
            return False

        order = await self._find_pending_order(session, event)

        if sub is None:
            org_id = _as_uuid(event.org_id) or (order.org_id if order is not None else None)
            if org_id is None:
                # Raising rolls back the ledger row so a redelivery is not a duplicate.
                logger.warning(
                    "billing_event_org_unresolved",
                    provider=event.provider.value,
                    event_id=event.event_id,
                    kind=event.kind.value,
                )
                raise BillingEventDeferred(
                    f"Subscription {event.subscription_id} has no resolvable org yet",
                    details={"provider": event.provider.value, "event_id": event.event_id},
                )
            sub = Subscription(
                org_id=org_id,
                provider=event.provider.value,
                provider_sub_id=event.subscription_id,
                plan_code=order.plan_code if order is not None else None,
                status=(status or SubscriptionStatus.ACTIVE).value,
                cancel_at_period_end=False,
            )
            session.add(sub)
        else:
            self._apply_status(sub, status, event)

        self._apply_fields(sub, event)
        sub.last_event_id = event.event_id
        self._complete_pending_order(order, event, canceled=canceled)
        await session.flush()

        audit_log(
            "subscription_state_applied",
            tenant_id=None,
            org_id=str(sub.org_id),
            details={
                "provider": event.provider.value,
                "event_id": event.event_id,
                "kind": event.kind.value,
                "status": sub.status,
            },
        )
        return True

    async def _on_subscription_upsert(self, session: AsyncSession, event: CanonicalEvent) -> bool:
        return await self._upsert_subscription(session, event, event.status)

    async def _on_subscription_canceled(self, session: AsyncSession, event: CanonicalEvent) -> bool:
        return await self._upsert_subscription(session, event, SubscriptionStatus.CANCELED, canceled=True)

    async def _on_invoice(self, session: AsyncSession, event: CanonicalEvent) -> bool:
        """Invoices only touch an existing subscription, and only the status they state explicitly."""
        sub = await self._lock_subscription(session, event.subscription_id)
        if self._already_applied(sub, event):
            return False

        if event.kind == BillingEventKind.INVOICE_PAID:
            self._complete_pending_order(await self._find_pending_order(session, event), event, canceled=False)

        if sub is None:
            logger.info(
                "billing_invoice_without_subscription",
                provider=event.provider.value,
                event_id=event.event_id,
                kind=event.kind.value,
            )
            return True

        self._apply_status(sub, event.status, event)
        sub.last_event_id = event.event_id
        await session.flush()
        return True

    async def _on_unknown(self, _session: AsyncSession, _event: CanonicalEvent) -> bool:
        return True


_DISPATCH: Dict[BillingEventKind, Callable[[BillingReconciler, AsyncSession, CanonicalEvent], Awaitable[bool]]] = {
    BillingEventKind.SUBSCRIPTION_CREATED: BillingReconciler._on_subscription_upsert,
    BillingEventKind.SUBSCRIPTION_UPDATED: BillingReconciler._on_subscription_upsert,
    BillingEventKind.SUBSCRIPTION_CANCELED: BillingReconciler._on_subscription_canceled,
    BillingEventKind.INVOICE_PAID: BillingReconciler._on_invoice,
    BillingEventKind.INVOICE_PAYMENT_FAILED: BillingReconciler._on_invoice,
    BillingEventKind.UNKNOWN: BillingReconciler._on_unknown,
}

_unhandled = set(BillingEventKind) - set(_DISPATCH)
if _unhandled:
    raise RuntimeError(f"Billing event kinds without a reconciler handler: {sorted(k.value for k in _unhandled)}")
