from typing import Dict

from sitewise.modules.billing.domain.config import BillingProviderConfig, load_billing_provider_config
from sitewise.modules.billing.domain.events import BillingProvider
from sitewise.modules.billing.domain.providers.base import BillingWebhookProvider
from sitewise.modules.billing.domain.providers.paystack import PaystackWebhookProvider
from sitewise.modules.billing.domain.providers.stripe import StripeWebhookProvider

_ADAPTERS = {
    BillingProvider.STRIPE: StripeWebhookProvider,
    BillingProvider.PAYSTACK: PaystackWebhookProvider,
}


def build_webhook_providers(config: BillingProviderConfig | None = None) -> Dict[BillingProvider, BillingWebhookProvider]:
    """
    One adapter per known provider, active or not: historical subscriptions
    keep sending webhooks after the checkout provider is switched.
    """
    config = config or load_billing_provider_config()
    return {provider: adapter(config) for provider, adapter in _ADAPTERS.items()}
