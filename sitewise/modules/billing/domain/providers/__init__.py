from sitewise.modules.billing.domain.providers.base import BillingWebhookProvider
from sitewise.modules.billing.domain.providers.factory import build_webhook_providers
from sitewise.modules.billing.domain.providers.paystack import PaystackWebhookProvider
from sitewise.modules.billing.domain.providers.stripe import StripeWebhookProvider

__all__ = [
    "BillingWebhookProvider",
    "build_webhook_providers",
    "PaystackWebhookProvider",
    "StripeWebhookProvider",
]
