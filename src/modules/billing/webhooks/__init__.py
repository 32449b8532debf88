"""Stripe webhook reconciliation."""

from .events import WebhookEvent, parse_event
from .service import WebhookReconciler

__all__ = ["WebhookEvent", "WebhookReconciler", "parse_event"]
