"""Database models for the credit ledger."""

from .base import Base, UTCDateTime, utcnow
from .ledger import CreditBalance, CreditTransaction, TransactionReason
from .purchases import CreditPackage, CreditPurchase, PurchaseStatus
from .subscriptions import PlanTier, Subscription, SubscriptionStatus
from .throttle import CostAlert, CostAlertType, CostThrottleCounter
from .webhooks import ProcessedWebhookEvent

# Export all models and enums
__all__ = [
    # Base
    "Base",
    "UTCDateTime",
    "utcnow",
    # Enums
    "TransactionReason",
    "CreditPackage",
    "PurchaseStatus",
    "PlanTier",
    "SubscriptionStatus",
    "CostAlertType",
    # Models
    "CreditBalance",
    "CreditTransaction",
    "CreditPurchase",
    "Subscription",
    "CostThrottleCounter",
    "CostAlert",
    "ProcessedWebhookEvent",
]
