from dataclasses import dataclass
from typing import Optional

import structlog

from sitewise.modules.billing.domain.events import BillingProvider
from sitewise.shared.core.config import Settings, get_settings
from sitewise.shared.core.exceptions import ConfigurationError

logger = structlog.get_logger()


@dataclass(frozen=True)
class StripeConfig:
    secret_key: Optional[str]
    webhook_secret: Optional[str]


@dataclass(frozen=True)
class PaystackConfig:
    secret_key: Optional[str]


@dataclass(frozen=True)
class BillingProviderConfig:
    """Provider secrets plus which provider takes new checkouts."""
    active_provider: BillingProvider
    stripe: StripeConfig
    paystack: PaystackConfig
    webhook_tolerance_seconds: int

    def is_configured(self, provider: BillingProvider) -> bool:
        if provider == BillingProvider.STRIPE:
            return bool(self.stripe.webhook_secret)
        return bool(self.paystack.secret_key)


def load_billing_provider_config(settings: Settings | None = None) -> BillingProviderConfig:
    settings = settings or get_settings()

    try:
        active = BillingProvider(settings.BILLING_PROVIDER.lower())
    except ValueError:
        raise ConfigurationError(
            f"Unsupported BILLING_PROVIDER '{settings.BILLING_PROVIDER}'",
            code="billing_provider_unsupported",
        ) from None

    config = BillingProviderConfig(
        active_provider=active,
        stripe=StripeConfig(
            secret_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        ),
        paystack=PaystackConfig(secret_key=settings.PAYSTACK_SECRET_KEY),
        webhook_tolerance_seconds=settings.BILLING_WEBHOOK_TOLERANCE_SECONDS,
    )

    if settings.is_production:
        if active == BillingProvider.STRIPE and (not config.stripe.secret_key or not config.stripe.webhook_secret):
            raise ConfigurationError(
                "Stripe billing provider requires STRIPE_SECRET_KEY and STRIPE_WEBHOOK_SECRET in production",
                code="billing_provider_secrets_missing",
            )
        if active == BillingProvider.PAYSTACK and not config.paystack.secret_key:
            raise ConfigurationError(
                "Paystack billing provider requires PAYSTACK_SECRET_KEY in production",
                code="billing_provider_secrets_missing",
            )

    if not config.is_configured(active):
        logger.warning("billing_active_provider_unconfigured", provider=active.value)

    return config
