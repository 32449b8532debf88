"""Outbound Stripe calls: credit purchases and subscription lifecycle."""

from dataclasses import dataclass
from uuid import UUID

import stripe  # type: ignore
from fastapi import status
from stripe import StripeError  # type: ignore
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.core.exceptions.base import CreditLedgerException
from src.api.core.messages import MessageCode
from src.core.base import BaseService
from src.database.models import (
    CreditPackage,
    CreditPurchase,
    PlanTier,
    PurchaseStatus,
    Subscription,
    SubscriptionStatus,
)
from src.modules.billing.constants import (
    CREDIT_PACKAGES,
    METADATA_ACCOUNT_ID,
    METADATA_CREDITS,
    METADATA_PACKAGE,
    METADATA_PLAN_TIER,
    PRICE_TO_PLAN_TIER,
)
from src.modules.ledger.store import LedgerStore
from src.utils.settings.stripe import StripeSettings


@dataclass(frozen=True)
class PurchaseIntent:
    purchase: CreditPurchase
    client_secret: str | None


class StripePaymentService(BaseService):
    """Thin wrapper over the Stripe API.

    Network retries are delegated to the Stripe client; every call that
    creates an object carries an idempotency key so retries are safe.
    """

    def __init__(self, db: AsyncSession, settings: StripeSettings | None = None):
        super().__init__(db)
        self.settings = settings or StripeSettings()
        stripe.api_key = self.settings.STRIPE_SECRET_KEY.get_secret_value()
        stripe.max_network_retries = self.settings.STRIPE_MAX_NETWORK_RETRIES

    def _external_error(self, action: str, error: StripeError) -> CreditLedgerException:
        self.logger.error(f"Stripe {action} failed", error=str(error))
        return CreditLedgerException(
            MessageCode.EXTERNAL_SERVICE_ERROR,
            status.HTTP_502_BAD_GATEWAY,
            details={"description": f"Failed to {action}"},
        )

    async def create_credit_purchase(
        self, account_id: UUID, package: CreditPackage, idempotency_key: str
    ) -> PurchaseIntent:
        """Create a PaymentIntent for a credit package and its pending purchase."""
        config = CREDIT_PACKAGES[package]
        await LedgerStore(self.db).open_account(account_id)

        try:
            intent = stripe.PaymentIntent.create(
                amount=config.amount_cents,
                currency=self.settings.STRIPE_CURRENCY,
                description=config.description,
                automatic_payment_methods={"enabled": True},
                metadata={
                    METADATA_ACCOUNT_ID: str(account_id),
                    METADATA_PACKAGE: package.value,
                    METADATA_CREDITS: str(config.credits),
                },
                idempotency_key=idempotency_key,
            )
        except StripeError as e:
            raise self._external_error("create payment intent", e) from e

        purchase = CreditPurchase(
            account_id=account_id,
            stripe_payment_intent_id=intent.id,
            credits=config.credits,
            amount_cents=config.amount_cents,
            currency=self.settings.STRIPE_CURRENCY,
            package=package.value,
            status=PurchaseStatus.PENDING,
        )
        self.db.add(purchase)
        await self.db.commit()

        self.logger.info(
            "Created credit purchase",
            account_id=str(account_id),
            package=package.value,
            payment_intent_id=intent.id,
        )
        return PurchaseIntent(purchase=purchase, client_secret=intent.client_secret)

    async def create_subscription_checkout(
        self,
        account_id: UUID,
        plan_tier: PlanTier,
        success_url: str,
        cancel_url: str,
        customer_id: str | None = None,
    ) -> stripe.checkout.Session:
        price_id = next(
            (price for price, tier in PRICE_TO_PLAN_TIER.items() if tier == plan_tier),
            None,
        )
        if price_id is None:
            raise CreditLedgerException(
                MessageCode.INVALID_INPUT,
                status.HTTP_400_BAD_REQUEST,
                details={"description": f"No price configured for {plan_tier.value}"},
            )

        metadata = {
            METADATA_ACCOUNT_ID: str(account_id),
            METADATA_PLAN_TIER: plan_tier.value,
        }
        try:
            return stripe.checkout.Session.create(
                customer=customer_id,
                mode="subscription",
                line_items=[{"price": price_id, "quantity": 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
                # Copied onto the subscription so its webhooks carry the account
                subscription_data={"metadata": metadata},
            )
        except StripeError as e:
            raise self._external_error("create checkout session", e) from e

    async def cancel_subscription(self, account_id: UUID) -> Subscription:
        """Cancel at period end; the deleted webhook finishes the job."""
        subscription = await self.db.get(Subscription, account_id)
        if subscription is None or subscription.status == SubscriptionStatus.CANCELED:
            raise CreditLedgerException(
                MessageCode.SUBSCRIPTION_NOT_FOUND, status.HTTP_404_NOT_FOUND
            )

        try:
            stripe.Subscription.modify(
                subscription.stripe_subscription_id, cancel_at_period_end=True
            )
        except StripeError as e:
            raise self._external_error("cancel subscription", e) from e

        subscription.status = SubscriptionStatus.CANCELING
        await self.db.commit()
        self.logger.info(
            "Subscription set to cancel at period end",
            account_id=str(account_id),
            stripe_subscription_id=subscription.stripe_subscription_id,
        )
        return subscription
