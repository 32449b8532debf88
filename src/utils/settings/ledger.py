"""Credit ledger settings configuration."""

from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Pricing
    TOKENS_PER_CREDIT: int = 5000
    MAX_TOKENS_PER_REQUEST: int = 20000

    # Grants
    SIGNUP_GRANT_CREDITS: int = 5
    MONTHLY_ALLOTMENT_INDIVIDUAL: int = 200
    MONTHLY_ALLOTMENT_ORG_MEMBER: int = 200
    BILLING_PERIOD_DAYS: int = 30
    # Cap carried-over credits at one allotment
    ROLLOVER_CAP_ENABLED: bool = True

    # Per-account lock
    LEDGER_LOCK_TIMEOUT_MS: int = 500
    LEDGER_LOCK_RETRY_ATTEMPTS: int = 3
    LEDGER_LOCK_RETRY_BACKOFF_MS: int = 50

    # Real-dollar ceilings per throttle window
    COST_LIMIT_FREE_USD: Decimal = Decimal("0.50")
    COST_LIMIT_INDIVIDUAL_USD: Decimal = Decimal("5.00")
    COST_LIMIT_ORG_MEMBER_USD: Decimal = Decimal("2.50")
    COST_ALERT_THRESHOLDS: list[int] = [50, 75, 90]

    # Bucket rotation
    ROTATION_ENABLED: bool = True
    ROTATION_CRON_HOUR: int = 0
    ROTATION_CRON_MINUTE: int = 0
    ROTATION_BATCH_SIZE: int = 100
    ROTATION_MARKER_TTL_SECONDS: int = 300

    def monthly_allotment(self, plan_tier: str) -> int:
        """Monthly credits granted to a subscription on `plan_tier`."""
        if plan_tier == "individual":
            return self.MONTHLY_ALLOTMENT_INDIVIDUAL
        if plan_tier == "org-member":
            return self.MONTHLY_ALLOTMENT_ORG_MEMBER
        return 0
