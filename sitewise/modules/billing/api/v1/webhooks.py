"""
Billing webhook endpoint.

- POST /billing/webhook/{provider} - Stripe or Paystack deliveries

Signature failures return 401 and malformed bodies 400 (both via the
`SiteWiseException` handler) so the provider retries per its own policy.
Events that cannot be applied yet return 409 so the provider redelivers.
Duplicates and unknown event types return 200.
"""
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from sitewise.modules.billing.domain.events import BillingProvider
from sitewise.modules.billing.domain.reconciler import BillingReconciler

logger = structlog.get_logger()
router = APIRouter(tags=["Billing"])

SIGNATURE_HEADERS = {
    BillingProvider.STRIPE: "stripe-signature",
    BillingProvider.PAYSTACK: "x-paystack-signature",
}


class WebhookResponse(BaseModel):
    status: str
    event_id: str


def get_billing_reconciler() -> BillingReconciler:
    return BillingReconciler()


@router.post("/webhook/{provider}", response_model=WebhookResponse)
async def handle_webhook(
    provider: BillingProvider,
    request: Request,
    reconciler: Annotated[BillingReconciler, Depends(get_billing_reconciler)],
):
    """Raw body is read before any parsing; the adapter verifies it first."""
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADERS[provider])

    result = await reconciler.handle(provider, payload, signature)

    logger.info(
        "billing_webhook_handled",
        provider=provider.value,
        event_id=result.event_id,
        status=result.status.value,
    )
    return WebhookResponse(status=result.status.value, event_id=result.event_id)
