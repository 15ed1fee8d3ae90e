from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator
from typing import Optional


class Settings(BaseSettings):
    """
    Main configuration for SiteWise.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """
    APP_NAME: str = "SiteWise"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # local, development, staging, production
    TESTING: bool = False

    # API server
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    @model_validator(mode='after')
    def validate_security_config(self) -> 'Settings':
        """Ensure the active billing provider can verify its webhooks outside dev."""
        if self.TESTING:
            return self

        provider = self.BILLING_PROVIDER.lower()
        if provider not in ("stripe", "paystack"):
            raise ValueError(f"BILLING_PROVIDER must be 'stripe' or 'paystack'. Current: {self.BILLING_PROVIDER}")

        if self.ENVIRONMENT in ["production", "staging"]:
            if provider == "stripe" and (not self.STRIPE_SECRET_KEY or not self.STRIPE_WEBHOOK_SECRET):
                raise ValueError(
                    "SECURITY ERROR: Stripe billing requires STRIPE_SECRET_KEY and STRIPE_WEBHOOK_SECRET "
                    f"in {self.ENVIRONMENT}."
                )
            if provider == "paystack" and not self.PAYSTACK_SECRET_KEY:
                raise ValueError(f"SECURITY ERROR: Paystack billing requires PAYSTACK_SECRET_KEY in {self.ENVIRONMENT}.")

            if self.DB_SSL_MODE not in ["require", "verify-ca", "verify-full"]:
                raise ValueError(
                    f"SECURITY ERROR: DB_SSL_MODE must be 'require', 'verify-ca', or 'verify-full' in {self.ENVIRONMENT}. "
                    f"Current: {self.DB_SSL_MODE}"
                )

            if self.BILLING_WEBHOOK_TOLERANCE_SECONDS <= 0:
                raise ValueError("BILLING_WEBHOOK_TOLERANCE_SECONDS must be positive; replay protection cannot be disabled.")

        return self

    # Database
    DATABASE_URL: str  # Required
    DB_SSL_MODE: str = "require"  # Options: disable, require, verify-ca, verify-full
    DB_SSL_CA_CERT_PATH: Optional[str] = None
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Celery broker / result backend
    REDIS_URL: Optional[str] = None  # e.g., redis://localhost:6379

    # Scheduler (UTC)
    SCHEDULER_HOUR: int = 2
    SCHEDULER_MINUTE: int = 0
    RETENTION_SCHEDULER_HOUR: int = 3

    # Billing
    # Exactly one provider takes new checkouts; every configured provider still
    # verifies webhooks for the subscriptions it created.
    BILLING_PROVIDER: str = "stripe"  # Options: stripe, paystack
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    PAYSTACK_SECRET_KEY: Optional[str] = None
    BILLING_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Data retention (compliance control, opt-in)
    RETENTION_ENABLED: bool = False

    # Usage metering
    AV30_ALLOW_LIST_VERSION: str = "v1"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True
    )

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


@lru_cache
def get_settings():
    """Returns a singleton instance of the application settings."""
    return Settings()
