"""Stripe settings configuration."""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import SecretStr


class StripeSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    STRIPE_WEBHOOK_SECRET: str = "whsec_test_webhook_secret"
    STRIPE_SECRET_KEY: SecretStr = SecretStr("sk_test_stripe_secret_key")

    # Signed payloads older than this are rejected
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_MAX_NETWORK_RETRIES: int = 2

    STRIPE_CURRENCY: str = "usd"
    STRIPE_PRICE_INDIVIDUAL_MONTHLY: str = "price_individual_monthly"
    STRIPE_PRICE_ORG_MEMBER_MONTHLY: str = "price_org_member_monthly"
