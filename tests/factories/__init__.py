"""Test factories for credit ledger models."""

from .base import AsyncSQLAlchemyModelFactory
from .balances import CostThrottleCounterFactory, CreditBalanceFactory
from .purchases import CreditPurchaseFactory
from .subscriptions import SubscriptionFactory

__all__ = [
    "AsyncSQLAlchemyModelFactory",
    "CreditBalanceFactory",
    "CostThrottleCounterFactory",
    "CreditPurchaseFactory",
    "SubscriptionFactory",
]
