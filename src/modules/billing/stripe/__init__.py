"""Stripe payment services."""

from .service import PurchaseIntent, StripePaymentService

__all__ = ["PurchaseIntent", "StripePaymentService"]
