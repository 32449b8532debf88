"""Exactly-once reconciliation of Stripe webhook events into the ledger."""

import json
import time
from datetime import datetime, timedelta, timezone
from uuid import UUID

import stripe  # type: ignore
from fastapi import status
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.core.exceptions.base import CreditLedgerException
from src.api.core.messages import MessageCode
from src.core.base import BaseService
from src.database.models import (
    CreditBalance,
    CreditPackage,
    CreditPurchase,
    PlanTier,
    ProcessedWebhookEvent,
    PurchaseStatus,
    Subscription,
    SubscriptionStatus,
    TransactionReason,
    utcnow,
)
from src.modules.billing.constants import (
    CREDIT_PACKAGES,
    METADATA_ACCOUNT_ID,
    METADATA_CREDITS,
    METADATA_PACKAGE,
    METADATA_PLAN_TIER,
    PRICE_TO_PLAN_TIER,
    subscription_status_from_stripe,
)
from src.modules.billing.webhooks.events import (
    ChargeRefunded,
    PaymentFailed,
    PaymentIntentObject,
    PaymentSucceeded,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionObject,
    SubscriptionUpdated,
    WebhookEvent,
    parse_event,
)
from src.modules.ledger.errors import (
    AccountNotFound,
    DuplicateEvent,
    WebhookSignatureInvalid,
)
from src.modules.ledger.store import LedgerStore, PoolDelta
from src.utils.settings.ledger import LedgerSettings
from src.utils.settings.stripe import StripeSettings


class WebhookReconciler(BaseService):
    """Applies verified Stripe events to subscriptions, purchases and balances.

    Delivery is at-least-once, so every handler is idempotent: the event id
    is recorded in the same database transaction as its effects, and grants
    are additionally keyed by correlation id in the transaction log.
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: LedgerSettings | None = None,
        stripe_settings: StripeSettings | None = None,
    ):
        super().__init__(db)
        self.settings = settings or LedgerSettings()
        self.stripe_settings = stripe_settings or StripeSettings()
        self.store = LedgerStore(db, self.settings)

    def verify(self, payload: bytes, signature: str | None) -> WebhookEvent:
        """Check signature and freshness, then parse the event."""
        if not signature:
            raise WebhookSignatureInvalid(
                details={"description": "Missing stripe-signature header"}
            )

        tolerance = self.stripe_settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
        try:
            stripe.Webhook.construct_event(
                payload,
                signature,
                self.stripe_settings.STRIPE_WEBHOOK_SECRET,
                tolerance=tolerance,
            )
        except (ValueError, stripe.SignatureVerificationError) as e:
            self.logger.warning("Webhook signature verification failed", error=str(e))
            raise WebhookSignatureInvalid(
                details={"description": "Signature verification failed"}
            ) from e

        raw = json.loads(payload)
        created = raw.get("created", 0)
        if abs(int(time.time()) - created) > tolerance:
            self.logger.warning("Webhook event timestamp too old", created=created)
            raise WebhookSignatureInvalid(
                details={"description": "Webhook event timestamp too old"}
            )

        try:
            return parse_event(raw)
        except ValidationError as e:
            self.logger.error(
                "Malformed webhook event", event_id=raw.get("id"), payload=raw
            )
            raise CreditLedgerException(
                MessageCode.INVALID_INPUT,
                status.HTTP_400_BAD_REQUEST,
                details={"description": "Malformed webhook event"},
            ) from e

    async def reconcile(self, event: WebhookEvent) -> None:
        """Apply one event. Raises `DuplicateEvent` if it was already applied."""
        if await self._already_processed(event.id):
            raise DuplicateEvent(details={"event_id": event.id})

        handlers = {
            "customer.subscription.created": self._handle_subscription_upsert,
            "customer.subscription.updated": self._handle_subscription_upsert,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "payment_intent.succeeded": self._handle_payment_succeeded,
            "payment_intent.payment_failed": self._handle_payment_failed,
            "charge.refunded": self._handle_charge_refunded,
        }
        try:
            await handlers[event.type](event)
        except DuplicateEvent:
            raise
        except IntegrityError as e:
            # Lost a race with a concurrent delivery of the same event
            await self.db.rollback()
            if await self._already_processed(event.id):
                raise DuplicateEvent(details={"event_id": event.id}) from e
            raise
        except Exception as e:
            # Left unacknowledged so Stripe redelivers; payload kept for replay
            self.logger.error(
                "Error handling webhook",
                event_id=event.id,
                event_type=event.type,
                error=str(e),
                payload=event.model_dump(mode="json"),
            )
            raise

        self.logger.info(
            "Webhook event reconciled", event_id=event.id, event_type=event.type
        )

    async def _already_processed(self, event_id: str) -> bool:
        return await self.db.get(ProcessedWebhookEvent, event_id) is not None

    def _mark_processed(self, event: WebhookEvent, account_id: UUID | None) -> None:
        self.db.add(
            ProcessedWebhookEvent(
                event_id=event.id, event_type=event.type, account_id=account_id
            )
        )

    @staticmethod
    def _event_time(event: WebhookEvent) -> datetime | None:
        if not event.created:
            return None
        return datetime.fromtimestamp(event.created, tz=timezone.utc)

    def _is_stale(self, subscription: Subscription, event: WebhookEvent) -> bool:
        """Stripe may deliver subscription events out of order."""
        event_at = self._event_time(event)
        if event_at is None or subscription.last_event_at is None:
            return False
        if event_at < subscription.last_event_at:
            self.logger.warning(
                "Stale subscription event skipped",
                event_id=event.id,
                event_type=event.type,
                event_at=event_at.isoformat(),
                last_event_at=subscription.last_event_at.isoformat(),
            )
            return True
        return False

    def _record_event_time(
        self, subscription: Subscription, event: WebhookEvent
    ) -> None:
        event_at = self._event_time(event)
        if event_at is not None:
            subscription.last_event_at = event_at

    async def _resolve_account(self, subscription: SubscriptionObject) -> UUID:
        account_id = subscription.metadata.get(METADATA_ACCOUNT_ID)
        if account_id:
            return UUID(account_id)

        existing = await self.db.scalar(
            select(Subscription).where(
                Subscription.stripe_subscription_id == subscription.id
            )
        )
        if existing is None and subscription.customer:
            existing = await self.db.scalar(
                select(Subscription).where(
                    Subscription.stripe_customer_id == subscription.customer
                )
            )
        if existing is None:
            raise AccountNotFound(
                details={
                    "description": "Subscription has no account_id metadata",
                    "stripe_subscription_id": subscription.id,
                }
            )
        return existing.account_id

    def _plan_tier(self, subscription: SubscriptionObject) -> PlanTier:
        for item in subscription.line_items:
            if item.price_id in PRICE_TO_PLAN_TIER:
                return PRICE_TO_PLAN_TIER[item.price_id]
        tier = subscription.metadata.get(METADATA_PLAN_TIER)
        if tier in (PlanTier.INDIVIDUAL.value, PlanTier.ORG_MEMBER.value):
            return PlanTier(tier)
        return PlanTier.INDIVIDUAL

    async def _handle_subscription_upsert(
        self, event: SubscriptionCreated | SubscriptionUpdated
    ) -> None:
        data = event.data.object
        account_id = await self._resolve_account(data)
        await self.store.open_account(account_id)

        new_status = subscription_status_from_stripe(
            data.status, data.cancel_at_period_end
        )
        plan_tier = self._plan_tier(data)
        period_end = data.period_end

        async with self.store.lock(account_id) as balance:
            # Re-checked under the lock so concurrent deliveries apply once
            if await self._already_processed(event.id):
                raise DuplicateEvent(details={"event_id": event.id})

            subscription = await self.db.get(
                Subscription, account_id, populate_existing=True
            )
            if subscription is not None and self._is_stale(subscription, event):
                self._mark_processed(event, account_id)
                return
            previous_status = subscription.status if subscription else None
            if subscription is None:
                subscription = Subscription(account_id=account_id)
                self.db.add(subscription)
            self._record_event_time(subscription, event)

            subscription.stripe_subscription_id = data.id
            subscription.stripe_customer_id = data.customer
            subscription.plan_tier = plan_tier
            subscription.status = new_status
            subscription.current_period_end = period_end

            activated = new_status == SubscriptionStatus.ACTIVE and previous_status in (
                None,
                SubscriptionStatus.CANCELED,
            )
            if activated:
                await self._grant_monthly_allotment(
                    balance, subscription, period_end, event.id
                )
            self._mark_processed(event, account_id)

        self.logger.info(
            "Subscription upserted",
            account_id=str(account_id),
            status=new_status.value,
            previous_status=previous_status,
            plan_tier=plan_tier.value,
        )

    async def _grant_monthly_allotment(
        self,
        balance: CreditBalance,
        subscription: Subscription,
        period_end: datetime | None,
        event_id: str,
    ) -> None:
        period_end = period_end or utcnow() + timedelta(
            days=self.settings.BILLING_PERIOD_DAYS
        )
        # One grant per billing period
        if (
            subscription.granted_period_end is not None
            and subscription.granted_period_end >= period_end
        ):
            self.logger.info(
                "Monthly allotment already granted for period",
                account_id=str(balance.account_id),
                period_end=period_end.isoformat(),
            )
            return

        plan_tier = PlanTier(subscription.plan_tier)
        allotment = self.settings.monthly_allotment(plan_tier)
        balance.monthly_allotment = allotment
        balance.monthly_reset_at = period_end
        subscription.granted_period_end = period_end
        await self.store.apply(
            balance,
            PoolDelta(monthly=max(allotment - balance.monthly_credits, 0)),
            TransactionReason.MONTHLY_GRANT,
            correlation_id=event_id,
            description=f"Monthly {plan_tier.value} allotment",
            details={"allotment": allotment, "period_end": period_end.isoformat()},
        )

    async def _handle_subscription_deleted(self, event: SubscriptionDeleted) -> None:
        data = event.data.object
        account_id = await self._resolve_account(data)

        async with self.store.lock(account_id) as balance:
            if await self._already_processed(event.id):
                raise DuplicateEvent(details={"event_id": event.id})

            subscription = await self.db.get(
                Subscription, account_id, populate_existing=True
            )
            if subscription is not None and self._is_stale(subscription, event):
                self._mark_processed(event, account_id)
                return
            if subscription is not None:
                self._record_event_time(subscription, event)
                subscription.status = SubscriptionStatus.CANCELED
                subscription.current_period_end = data.period_end

            # Only the monthly pool goes; rollover and purchased credits stay
            balance.monthly_reset_at = None
            if balance.monthly_credits > 0:
                await self.store.apply(
                    balance,
                    PoolDelta(monthly=-balance.monthly_credits),
                    TransactionReason.ADMIN_ADJUSTMENT,
                    correlation_id=event.id,
                    description="Subscription canceled, monthly credits removed",
                    details={"stripe_subscription_id": data.id},
                )
            self._mark_processed(event, account_id)

        self.logger.info("Subscription canceled", account_id=str(account_id))

    async def _find_purchase(self, payment_intent_id: str) -> CreditPurchase | None:
        return await self.db.scalar(
            select(CreditPurchase)
            .where(CreditPurchase.stripe_payment_intent_id == payment_intent_id)
            .execution_options(populate_existing=True)
        )

    async def _handle_payment_succeeded(self, event: PaymentSucceeded) -> None:
        intent = event.data.object
        purchase = await self._find_purchase(intent.id)
        if purchase is None:
            purchase = await self._purchase_from_intent(intent)

        async with self.store.lock(purchase.account_id) as balance:
            if await self._already_processed(event.id):
                raise DuplicateEvent(details={"event_id": event.id})
            purchase = await self._find_purchase(intent.id)
            granted = await self.store.find_transaction(
                intent.id, TransactionReason.PURCHASE
            )
            if granted is not None or purchase.status in (
                PurchaseStatus.SUCCEEDED,
                PurchaseStatus.REFUNDED,
            ):
                self._mark_processed(event, purchase.account_id)
                self.logger.info(
                    "Purchase already settled",
                    payment_intent_id=intent.id,
                    status=purchase.status,
                )
                return

            # A failed intent can still succeed when Stripe retries the payment
            purchase.status = PurchaseStatus.SUCCEEDED
            purchase.completed_at = utcnow()
            await self.store.apply(
                balance,
                PoolDelta(purchased=purchase.credits),
                TransactionReason.PURCHASE,
                correlation_id=intent.id,
                description=f"Purchased {purchase.credits} credits",
                details={
                    "purchase_id": str(purchase.id),
                    "package": purchase.package,
                    "amount_cents": purchase.amount_cents,
                    "currency": purchase.currency,
                },
            )
            self._mark_processed(event, purchase.account_id)

    async def _purchase_from_intent(
        self, intent: PaymentIntentObject
    ) -> CreditPurchase:
        """Record a purchase Stripe knows about but we never saw created."""
        if not intent.metadata.get(METADATA_ACCOUNT_ID):
            raise AccountNotFound(
                details={
                    "description": "PaymentIntent has no account_id metadata",
                    "payment_intent_id": intent.id,
                }
            )
        return await self._purchase_from_metadata(
            intent.id,
            intent.metadata,
            intent.amount,
            intent.currency,
            PurchaseStatus.PENDING,
        )

    async def _purchase_from_metadata(
        self,
        payment_intent_id: str,
        metadata: dict[str, str],
        amount_cents: int,
        currency: str,
        purchase_status: PurchaseStatus,
    ) -> CreditPurchase:
        account_id = UUID(metadata[METADATA_ACCOUNT_ID])
        package = metadata.get(METADATA_PACKAGE)
        credits = metadata.get(METADATA_CREDITS)
        if credits is None and package in CREDIT_PACKAGES:
            credits = CREDIT_PACKAGES[CreditPackage(package)].credits
        if credits is None:
            raise ValueError(
                f"Cannot determine credits for payment {payment_intent_id}"
            )

        await self.store.open_account(account_id)
        purchase = CreditPurchase(
            account_id=account_id,
            stripe_payment_intent_id=payment_intent_id,
            credits=int(credits),
            amount_cents=amount_cents,
            currency=currency,
            package=package,
            status=purchase_status,
        )
        if purchase_status == PurchaseStatus.REFUNDED:
            purchase.refunded_at = utcnow()
        self.db.add(purchase)
        await self.db.commit()
        self.logger.warning(
            "Created missing purchase record",
            payment_intent_id=payment_intent_id,
            account_id=str(account_id),
            status=purchase_status.value,
        )
        return purchase

    async def _handle_payment_failed(self, event: PaymentFailed) -> None:
        intent = event.data.object
        purchase = await self._find_purchase(intent.id)
        if purchase is not None and purchase.status == PurchaseStatus.PENDING:
            purchase.status = PurchaseStatus.FAILED
            purchase.failed_at = utcnow()
            purchase.failure_reason = (
                intent.last_payment_error.message
                if intent.last_payment_error
                else None
            )
        elif purchase is None:
            self.logger.warning(
                "Payment failed for unknown purchase", payment_intent_id=intent.id
            )
        self._mark_processed(event, purchase.account_id if purchase else None)
        await self.db.commit()

    async def _handle_charge_refunded(self, event: ChargeRefunded) -> None:
        charge = event.data.object
        if not charge.payment_intent:
            self.logger.warning("Refunded charge has no payment intent", charge=charge.id)
            self._mark_processed(event, None)
            await self.db.commit()
            return

        purchase = await self._find_purchase(charge.payment_intent)
        if purchase is None and charge.metadata.get(METADATA_ACCOUNT_ID):
            # Recorded as refunded so a late success event grants nothing
            purchase = await self._purchase_from_metadata(
                charge.payment_intent,
                charge.metadata,
                charge.amount,
                charge.currency,
                PurchaseStatus.REFUNDED,
            )
        if purchase is None:
            self.logger.warning(
                "Refund for unknown purchase", payment_intent_id=charge.payment_intent
            )
            self._mark_processed(event, None)
            await self.db.commit()
            return

        async with self.store.lock(purchase.account_id) as balance:
            if await self._already_processed(event.id):
                raise DuplicateEvent(details={"event_id": event.id})
            purchase = await self._find_purchase(charge.payment_intent)
            if purchase.status in (PurchaseStatus.PENDING, PurchaseStatus.FAILED):
                # Nothing was granted yet; a later success must not grant either
                purchase.status = PurchaseStatus.REFUNDED
                purchase.refunded_at = utcnow()
                self.logger.warning(
                    "Refund arrived before payment settled",
                    payment_intent_id=charge.payment_intent,
                    account_id=str(purchase.account_id),
                )
                self._mark_processed(event, purchase.account_id)
                return
            if purchase.status != PurchaseStatus.SUCCEEDED:
                self.logger.info(
                    "Refund ignored for purchase already refunded",
                    payment_intent_id=charge.payment_intent,
                    status=purchase.status,
                )
                self._mark_processed(event, purchase.account_id)
                return

            purchase.status = PurchaseStatus.REFUNDED
            purchase.refunded_at = utcnow()
            # Best effort: credits already spent are not recovered
            clawback = min(purchase.credits, balance.purchased_credits)
            await self.store.apply(
                balance,
                PoolDelta(purchased=-clawback),
                TransactionReason.REFUND_CLAWBACK,
                correlation_id=charge.payment_intent,
                description=f"Refund of {purchase.credits} purchased credits",
                details={
                    "purchase_id": str(purchase.id),
                    "charge_id": charge.id,
                    "requested": purchase.credits,
                    "clawed_back": clawback,
                },
            )
            if clawback < purchase.credits:
                self.logger.warning(
                    "Refund clawback clamped",
                    account_id=str(purchase.account_id),
                    requested=purchase.credits,
                    clawed_back=clawback,
                )
            self._mark_processed(event, purchase.account_id)
