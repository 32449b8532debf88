"""Stripe pricing constants and configurations."""

from dataclasses import dataclass

from src.database.models import CreditPackage, PlanTier, SubscriptionStatus
from src.utils.settings.stripe import StripeSettings

_stripe_settings = StripeSettings()


@dataclass(frozen=True)
class CreditPackageConfig:
    """One-time credit package sold through a PaymentIntent."""

    credits: int
    amount_cents: int
    description: str


CREDIT_PACKAGES: dict[CreditPackage, CreditPackageConfig] = {
    CreditPackage.SMALL: CreditPackageConfig(
        credits=100, amount_cents=500, description="100 playground credits"
    ),
    CreditPackage.MEDIUM: CreditPackageConfig(
        credits=250, amount_cents=1000, description="250 playground credits"
    ),
    CreditPackage.LARGE: CreditPackageConfig(
        credits=600, amount_cents=2000, description="600 playground credits"
    ),
}

# Mapping from Stripe subscription price IDs to plan tiers
PRICE_TO_PLAN_TIER: dict[str, PlanTier] = {
    _stripe_settings.STRIPE_PRICE_INDIVIDUAL_MONTHLY: PlanTier.INDIVIDUAL,
    _stripe_settings.STRIPE_PRICE_ORG_MEMBER_MONTHLY: PlanTier.ORG_MEMBER,
}

# Stripe statuses that keep the subscription entitled to its allotment
STRIPE_ENTITLED_STATUSES = frozenset({"active", "trialing"})

# Metadata keys written on outbound Stripe objects and read back from webhooks
METADATA_ACCOUNT_ID = "account_id"
METADATA_PLAN_TIER = "plan_tier"
METADATA_PACKAGE = "package"
METADATA_CREDITS = "credits"


def subscription_status_from_stripe(
    stripe_status: str, cancel_at_period_end: bool = False
) -> SubscriptionStatus:
    """Collapse Stripe's subscription statuses onto the ledger's three states."""
    if stripe_status in STRIPE_ENTITLED_STATUSES:
        if cancel_at_period_end:
            return SubscriptionStatus.CANCELING
        return SubscriptionStatus.ACTIVE
    # past_due, unpaid, incomplete, paused, canceled: no further grants
    return SubscriptionStatus.CANCELED
