"""Webhook reconciler tests: verification and exactly-once application."""

import json
import time
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.core.exceptions.base import CreditLedgerException
from src.database.models import (
    CreditPurchase,
    CreditTransaction,
    PlanTier,
    ProcessedWebhookEvent,
    PurchaseStatus,
    Subscription,
    SubscriptionStatus,
    TransactionReason,
)
from src.modules.billing.constants import subscription_status_from_stripe
from src.modules.billing.webhooks.events import parse_event
from src.modules.billing.webhooks.service import WebhookReconciler
from src.modules.ledger.errors import (
    AccountNotFound,
    DuplicateEvent,
    UnsupportedWebhookEvent,
    WebhookSignatureInvalid,
)
from src.modules.ledger.store import LedgerStore
from tests.unit.modules.billing.fixtures_stripe_webhooks import (
    ORG_MEMBER_PRICE_ID,
    charge_refunded_event,
    payment_intent_event,
    period_end_in,
    subscription_event,
)


@pytest.fixture
def reconciler(db_session: AsyncSession, ledger_settings) -> WebhookReconciler:
    return WebhookReconciler(db_session, ledger_settings)


async def _apply(reconciler: WebhookReconciler, payload: dict) -> None:
    await reconciler.reconcile(parse_event(payload))


async def _count(db: AsyncSession, account_id, reason: TransactionReason) -> int:
    return await db.scalar(
        select(func.count())
        .select_from(CreditTransaction)
        .where(
            CreditTransaction.account_id == account_id,
            CreditTransaction.reason == reason,
        )
    )


async def _purchase(db: AsyncSession, payment_intent_id: str) -> CreditPurchase:
    return await db.scalar(
        select(CreditPurchase)
        .where(CreditPurchase.stripe_payment_intent_id == payment_intent_id)
        .execution_options(populate_existing=True)
    )


class TestVerify:
    def test_valid_signature(self, reconciler: WebhookReconciler, signed_webhook):
        payload, headers = signed_webhook(
            payment_intent_event("payment_intent.succeeded", "pi_verify", uuid4())
        )

        event = reconciler.verify(payload, headers["stripe-signature"])

        assert event.type == "payment_intent.succeeded"
        assert event.data.object.id == "pi_verify"

    def test_missing_signature(self, reconciler: WebhookReconciler, signed_webhook):
        payload, _ = signed_webhook(charge_refunded_event("pi_x"))

        with pytest.raises(WebhookSignatureInvalid):
            reconciler.verify(payload, None)

    def test_wrong_secret(self, reconciler: WebhookReconciler, stripe_signature):
        payload = json.dumps(charge_refunded_event("pi_x")).encode()

        with pytest.raises(WebhookSignatureInvalid):
            reconciler.verify(payload, stripe_signature(payload, secret="whsec_other"))

    def test_tampered_payload(self, reconciler: WebhookReconciler, stripe_signature):
        payload = json.dumps(charge_refunded_event("pi_x")).encode()
        signature = stripe_signature(payload)

        with pytest.raises(WebhookSignatureInvalid):
            reconciler.verify(payload.replace(b"pi_x", b"pi_y"), signature)

    def test_stale_signature(self, reconciler: WebhookReconciler, stripe_signature):
        payload = json.dumps(charge_refunded_event("pi_x")).encode()
        signature = stripe_signature(payload, timestamp=int(time.time()) - 3600)

        with pytest.raises(WebhookSignatureInvalid):
            reconciler.verify(payload, signature)

    def test_stale_event_with_fresh_signature(
        self, reconciler: WebhookReconciler, signed_webhook
    ):
        payload, headers = signed_webhook(
            charge_refunded_event("pi_x", created=int(time.time()) - 3600)
        )

        with pytest.raises(WebhookSignatureInvalid) as exc_info:
            reconciler.verify(payload, headers["stripe-signature"])
        assert "too old" in exc_info.value.details["description"]

    def test_unsupported_event_type(self, reconciler: WebhookReconciler, signed_webhook):
        event = charge_refunded_event("pi_x")
        event["type"] = "invoice.paid"
        payload, headers = signed_webhook(event)

        with pytest.raises(UnsupportedWebhookEvent) as exc_info:
            reconciler.verify(payload, headers["stripe-signature"])
        assert exc_info.value.status_code == 400

    def test_malformed_event(self, reconciler: WebhookReconciler, signed_webhook):
        event = charge_refunded_event("pi_x")
        del event["data"]["object"]["id"]
        payload, headers = signed_webhook(event)

        with pytest.raises(CreditLedgerException) as exc_info:
            reconciler.verify(payload, headers["stripe-signature"])
        assert exc_info.value.status_code == 400


class TestSubscriptionEvents:
    @pytest.mark.asyncio
    async def test_created_grants_allotment_and_signup(
        self,
        reconciler: WebhookReconciler,
        store: LedgerStore,
        db_session: AsyncSession,
        ledger_settings,
    ):
        account_id = uuid4()
        period_end = period_end_in(30)

        await _apply(
            reconciler,
            subscription_event(
                "customer.subscription.created", account_id, period_end=period_end
            ),
        )

        snapshot = await store.get_balance(account_id)
        assert snapshot.monthly == ledger_settings.MONTHLY_ALLOTMENT_INDIVIDUAL
        assert snapshot.purchased == ledger_settings.SIGNUP_GRANT_CREDITS
        assert snapshot.monthly_allotment == ledger_settings.MONTHLY_ALLOTMENT_INDIVIDUAL
        assert snapshot.monthly_reset_at == period_end

        subscription = await db_session.get(Subscription, account_id)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.plan_tier == PlanTier.INDIVIDUAL
        assert subscription.granted_period_end == period_end

    @pytest.mark.asyncio
    async def test_org_member_price(
        self, reconciler: WebhookReconciler, db_session: AsyncSession
    ):
        account_id = uuid4()

        await _apply(
            reconciler,
            subscription_event(
                "customer.subscription.created",
                account_id,
                price_id=ORG_MEMBER_PRICE_ID,
            ),
        )

        subscription = await db_session.get(Subscription, account_id)
        assert subscription.plan_tier == PlanTier.ORG_MEMBER

    @pytest.mark.asyncio
    async def test_replayed_event_is_duplicate(
        self, reconciler: WebhookReconciler, db_session: AsyncSession
    ):
        account_id = uuid4()
        payload = subscription_event("customer.subscription.created", account_id)

        await _apply(reconciler, payload)
        with pytest.raises(DuplicateEvent):
            await _apply(reconciler, payload)

        assert (
            await _count(db_session, account_id, TransactionReason.MONTHLY_GRANT) == 1
        )

    @pytest.mark.asyncio
    async def test_one_grant_per_period(
        self,
        reconciler: WebhookReconciler,
        store: LedgerStore,
        db_session: AsyncSession,
    ):
        account_id = uuid4()
        period_end = period_end_in(30)

        await _apply(
            reconciler,
            subscription_event(
                "customer.subscription.created", account_id, period_end=period_end
            ),
        )
        await _apply(
            reconciler,
            subscription_event(
                "customer.subscription.updated", account_id, period_end=period_end
            ),
        )
        await _apply(
            reconciler,
            subscription_event(
                "customer.subscription.deleted",
                account_id,
                status="canceled",
                period_end=period_end,
            ),
        )
        # Resubscribing inside the same period must not mint a second allotment
        await _apply(
            reconciler,
            subscription_event(
                "customer.subscription.created", account_id, period_end=period_end
            ),
        )

        assert (
            await _count(db_session, account_id, TransactionReason.MONTHLY_GRANT) == 1
        )
        assert (await store.get_balance(account_id)).monthly == 0

    @pytest.mark.asyncio
    async def test_cancel_at_period_end_keeps_credits(
        self,
        reconciler: WebhookReconciler,
        store: LedgerStore,
        db_session: AsyncSession,
    ):
        account_id = uuid4()
        await _apply(
            reconciler, subscription_event("customer.subscription.created", account_id)
        )

        await _apply(
            reconciler,
            subscription_event(
                "customer.subscription.updated", account_id, cancel_at_period_end=True
            ),
        )

        subscription = await db_session.get(Subscription, account_id)
        assert subscription.status == SubscriptionStatus.CANCELING
        assert (await store.get_balance(account_id)).monthly == 200

    @pytest.mark.asyncio
    async def test_deleted_zeroes_monthly_only(
        self,
        reconciler: WebhookReconciler,
        store: LedgerStore,
        seed_account,
        db_session: AsyncSession,
    ):
        balance = await seed_account(rollover=30, purchased=40)
        await _apply(
            reconciler,
            subscription_event("customer.subscription.created", balance.account_id),
        )

        await _apply(
            reconciler,
            subscription_event(
                "customer.subscription.deleted", balance.account_id, status="canceled"
            ),
        )

        snapshot = await store.get_balance(balance.account_id)
        assert (snapshot.monthly, snapshot.rollover, snapshot.purchased) == (0, 30, 40)
        assert snapshot.monthly_reset_at is None
        subscription = await db_session.get(Subscription, balance.account_id)
        assert subscription.status == SubscriptionStatus.CANCELED
        assert await store.replay_total(balance.account_id) == snapshot.total

    @pytest.mark.asyncio
    async def test_update_delivered_after_delete_is_skipped(
        self,
        reconciler: WebhookReconciler,
        store: LedgerStore,
        db_session: AsyncSession,
    ):
        account_id = uuid4()
        now = int(time.time())
        await _apply(
            reconciler,
            subscription_event(
                "customer.subscription.created", account_id, created=now - 20
            ),
        )
        await _apply(
            reconciler,
            subscription_event(
                "customer.subscription.deleted",
                account_id,
                status="canceled",
                created=now,
            ),
        )

        stale = subscription_event(
            "customer.subscription.updated", account_id, created=now - 10
        )
        await _apply(reconciler, stale)

        subscription = await db_session.get(
            Subscription, account_id, populate_existing=True
        )
        assert subscription.status == SubscriptionStatus.CANCELED
        assert int(subscription.last_event_at.timestamp()) == now
        assert (await store.get_balance(account_id)).monthly == 0
        # Acknowledged so Stripe stops redelivering it
        assert await db_session.get(ProcessedWebhookEvent, stale["id"]) is not None

    @pytest.mark.asyncio
    async def test_newer_update_after_delete_reactivates(
        self,
        reconciler: WebhookReconciler,
        store: LedgerStore,
        db_session: AsyncSession,
        ledger_settings,
    ):
        account_id = uuid4()
        now = int(time.time())
        await _apply(
            reconciler,
            subscription_event(
                "customer.subscription.created", account_id, created=now - 20
            ),
        )
        await _apply(
            reconciler,
            subscription_event(
                "customer.subscription.deleted",
                account_id,
                status="canceled",
                created=now - 10,
            ),
        )

        await _apply(
            reconciler,
            subscription_event(
                "customer.subscription.updated",
                account_id,
                period_end=period_end_in(60),
                created=now,
            ),
        )

        subscription = await db_session.get(
            Subscription, account_id, populate_existing=True
        )
        assert subscription.status == SubscriptionStatus.ACTIVE
        snapshot = await store.get_balance(account_id)
        assert snapshot.monthly == ledger_settings.MONTHLY_ALLOTMENT_INDIVIDUAL

    @pytest.mark.asyncio
    async def test_account_resolved_from_stored_subscription(
        self,
        reconciler: WebhookReconciler,
        store: LedgerStore,
    ):
        account_id = uuid4()
        await _apply(
            reconciler,
            subscription_event(
                "customer.subscription.created",
                account_id,
                subscription_id="sub_lookup",
            ),
        )

        await _apply(
            reconciler,
            subscription_event(
                "customer.subscription.deleted",
                None,
                status="canceled",
                subscription_id="sub_lookup",
            ),
        )

        assert (await store.get_balance(account_id)).monthly == 0

    @pytest.mark.asyncio
    async def test_unknown_subscription_is_not_acknowledged(
        self, reconciler: WebhookReconciler, db_session: AsyncSession
    ):
        payload = subscription_event(
            "customer.subscription.updated",
            None,
            subscription_id="sub_unknown",
            customer="cus_unknown",
        )

        with pytest.raises(AccountNotFound):
            await _apply(reconciler, payload)

        assert await db_session.get(ProcessedWebhookEvent, payload["id"]) is None


class TestPaymentEvents:
    @pytest.mark.asyncio
    async def test_succeeded_credits_pending_purchase(
        self,
        reconciler: WebhookReconciler,
        store: LedgerStore,
        seed_account,
        purchase_factory,
        db_session: AsyncSession,
    ):
        balance = await seed_account()
        await purchase_factory.create_async(
            db_session,
            commit=True,
            account_id=balance.account_id,
            stripe_payment_intent_id="pi_paid",
            credits=250,
            package="medium",
        )

        await _apply(
            reconciler,
            payment_intent_event(
                "payment_intent.succeeded", "pi_paid", balance.account_id, credits=250
            ),
        )

        assert (await store.get_balance(balance.account_id)).purchased == 250
        purchase = await _purchase(db_session, "pi_paid")
        assert purchase.status == PurchaseStatus.SUCCEEDED
        assert purchase.completed_at is not None

    @pytest.mark.asyncio
    async def test_redelivery_credits_once(
        self,
        reconciler: WebhookReconciler,
        store: LedgerStore,
        seed_account,
        purchase_factory,
        db_session: AsyncSession,
    ):
        balance = await seed_account()
        await purchase_factory.create_async(
            db_session,
            commit=True,
            account_id=balance.account_id,
            stripe_payment_intent_id="pi_twice",
        )
        payload = payment_intent_event(
            "payment_intent.succeeded", "pi_twice", balance.account_id
        )

        await _apply(reconciler, payload)
        with pytest.raises(DuplicateEvent):
            await _apply(reconciler, payload)
        # A distinct event for the same intent is acknowledged without a grant
        await _apply(
            reconciler,
            payment_intent_event(
                "payment_intent.succeeded", "pi_twice", balance.account_id
            ),
        )

        assert await _count(db_session, balance.account_id, TransactionReason.PURCHASE) == 1
        assert (await store.get_balance(balance.account_id)).purchased == 100

    @pytest.mark.asyncio
    async def test_succeeded_without_local_purchase(
        self,
        reconciler: WebhookReconciler,
        store: LedgerStore,
        db_session: AsyncSession,
        ledger_settings,
    ):
        account_id = uuid4()

        await _apply(
            reconciler,
            payment_intent_event(
                "payment_intent.succeeded",
                "pi_orphan",
                account_id,
                package="large",
                credits=None,
                amount=2000,
            ),
        )

        snapshot = await store.get_balance(account_id)
        assert snapshot.purchased == ledger_settings.SIGNUP_GRANT_CREDITS + 600
        purchase = await _purchase(db_session, "pi_orphan")
        assert purchase.status == PurchaseStatus.SUCCEEDED
        assert purchase.amount_cents == 2000

    @pytest.mark.asyncio
    async def test_failed_then_succeeded(
        self,
        reconciler: WebhookReconciler,
        store: LedgerStore,
        seed_account,
        purchase_factory,
        db_session: AsyncSession,
    ):
        balance = await seed_account()
        await purchase_factory.create_async(
            db_session,
            commit=True,
            account_id=balance.account_id,
            stripe_payment_intent_id="pi_retry",
        )

        await _apply(
            reconciler,
            payment_intent_event(
                "payment_intent.payment_failed",
                "pi_retry",
                balance.account_id,
                failure_message="Your card was declined.",
            ),
        )
        purchase = await _purchase(db_session, "pi_retry")
        assert purchase.status == PurchaseStatus.FAILED
        assert purchase.failure_reason == "Your card was declined."
        assert (await store.get_balance(balance.account_id)).purchased == 0

        await _apply(
            reconciler,
            payment_intent_event(
                "payment_intent.succeeded", "pi_retry", balance.account_id
            ),
        )
        assert (await _purchase(db_session, "pi_retry")).status == PurchaseStatus.SUCCEEDED
        assert (await store.get_balance(balance.account_id)).purchased == 100

    @pytest.mark.asyncio
    async def test_failed_for_unknown_purchase_is_acknowledged(
        self, reconciler: WebhookReconciler, db_session: AsyncSession
    ):
        payload = payment_intent_event("payment_intent.payment_failed", "pi_nowhere")

        await _apply(reconciler, payload)

        assert await db_session.get(ProcessedWebhookEvent, payload["id"]) is not None


class TestRefunds:
    @pytest.mark.asyncio
    async def test_clawback_is_clamped_to_remaining_purchased(
        self,
        reconciler: WebhookReconciler,
        store: LedgerStore,
        seed_account,
        purchase_factory,
        db_session: AsyncSession,
    ):
        balance = await seed_account(monthly=8, purchased=5)
        await purchase_factory.create_async(
            db_session,
            commit=True,
            account_id=balance.account_id,
            stripe_payment_intent_id="pi_refund",
            credits=10,
            status=PurchaseStatus.SUCCEEDED,
        )

        await _apply(reconciler, charge_refunded_event("pi_refund"))

        snapshot = await store.get_balance(balance.account_id)
        assert (snapshot.monthly, snapshot.purchased) == (8, 0)
        clawback = await store.find_transaction(
            "pi_refund", TransactionReason.REFUND_CLAWBACK
        )
        assert clawback.amount == -5
        assert clawback.details["requested"] == 10
        assert (await _purchase(db_session, "pi_refund")).status == PurchaseStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_full_clawback(
        self,
        reconciler: WebhookReconciler,
        store: LedgerStore,
        seed_account,
        purchase_factory,
        db_session: AsyncSession,
    ):
        balance = await seed_account()
        await purchase_factory.create_async(
            db_session,
            commit=True,
            account_id=balance.account_id,
            stripe_payment_intent_id="pi_full",
        )
        await _apply(
            reconciler,
            payment_intent_event("payment_intent.succeeded", "pi_full", balance.account_id),
        )

        await _apply(reconciler, charge_refunded_event("pi_full"))
        # Refund of an already refunded purchase changes nothing
        await _apply(reconciler, charge_refunded_event("pi_full"))

        snapshot = await store.get_balance(balance.account_id)
        assert snapshot.purchased == 0
        assert (
            await _count(
                db_session, balance.account_id, TransactionReason.REFUND_CLAWBACK
            )
            == 1
        )

    @pytest.mark.asyncio
    async def test_refund_of_pending_purchase_claws_back_nothing(
        self,
        reconciler: WebhookReconciler,
        store: LedgerStore,
        seed_account,
        purchase_factory,
        db_session: AsyncSession,
    ):
        balance = await seed_account(purchased=20)
        await purchase_factory.create_async(
            db_session,
            commit=True,
            account_id=balance.account_id,
            stripe_payment_intent_id="pi_pending",
        )

        await _apply(reconciler, charge_refunded_event("pi_pending"))

        assert (await store.get_balance(balance.account_id)).purchased == 20
        purchase = await _purchase(db_session, "pi_pending")
        assert purchase.status == PurchaseStatus.REFUNDED
        assert purchase.refunded_at is not None
        assert (
            await _count(
                db_session, balance.account_id, TransactionReason.REFUND_CLAWBACK
            )
            == 0
        )

    @pytest.mark.asyncio
    async def test_success_after_refund_grants_nothing(
        self,
        reconciler: WebhookReconciler,
        store: LedgerStore,
        seed_account,
        purchase_factory,
        db_session: AsyncSession,
    ):
        balance = await seed_account()
        await purchase_factory.create_async(
            db_session,
            commit=True,
            account_id=balance.account_id,
            stripe_payment_intent_id="pi_reordered",
        )

        await _apply(reconciler, charge_refunded_event("pi_reordered"))
        await _apply(
            reconciler,
            payment_intent_event(
                "payment_intent.succeeded", "pi_reordered", balance.account_id
            ),
        )

        snapshot = await store.get_balance(balance.account_id)
        assert snapshot.purchased == 0
        assert await _count(db_session, balance.account_id, TransactionReason.PURCHASE) == 0
        assert (
            await _purchase(db_session, "pi_reordered")
        ).status == PurchaseStatus.REFUNDED
        assert await store.replay_total(balance.account_id) == snapshot.total

    @pytest.mark.asyncio
    async def test_refund_before_any_local_purchase(
        self,
        reconciler: WebhookReconciler,
        store: LedgerStore,
        db_session: AsyncSession,
        ledger_settings,
    ):
        account_id = uuid4()

        await _apply(
            reconciler,
            charge_refunded_event(
                "pi_unseen",
                amount=500,
                metadata={"account_id": str(account_id), "package": "small"},
            ),
        )
        purchase = await _purchase(db_session, "pi_unseen")
        assert purchase.status == PurchaseStatus.REFUNDED
        assert purchase.account_id == account_id

        await _apply(
            reconciler,
            payment_intent_event("payment_intent.succeeded", "pi_unseen", account_id),
        )

        snapshot = await store.get_balance(account_id)
        assert snapshot.purchased == ledger_settings.SIGNUP_GRANT_CREDITS
        assert await _count(db_session, account_id, TransactionReason.PURCHASE) == 0

    @pytest.mark.asyncio
    async def test_refund_for_unknown_purchase_without_metadata(
        self, reconciler: WebhookReconciler, db_session: AsyncSession
    ):
        payload = charge_refunded_event("pi_stranger")

        await _apply(reconciler, payload)

        assert await db_session.get(ProcessedWebhookEvent, payload["id"]) is not None
        assert await _purchase(db_session, "pi_stranger") is None

    @pytest.mark.asyncio
    async def test_refund_without_payment_intent(
        self, reconciler: WebhookReconciler, db_session: AsyncSession
    ):
        payload = charge_refunded_event(None)

        await _apply(reconciler, payload)

        assert await db_session.get(ProcessedWebhookEvent, payload["id"]) is not None


class TestStatusMapping:
    @pytest.mark.parametrize(
        "stripe_status,cancel_at_period_end,expected",
        [
            ("active", False, SubscriptionStatus.ACTIVE),
            ("trialing", False, SubscriptionStatus.ACTIVE),
            ("active", True, SubscriptionStatus.CANCELING),
            ("past_due", False, SubscriptionStatus.CANCELED),
            ("unpaid", False, SubscriptionStatus.CANCELED),
            ("incomplete", False, SubscriptionStatus.CANCELED),
            ("paused", False, SubscriptionStatus.CANCELED),
            ("canceled", False, SubscriptionStatus.CANCELED),
        ],
    )
    def test_collapse(self, stripe_status, cancel_at_period_end, expected):
        assert subscription_status_from_stripe(stripe_status, cancel_at_period_end) == expected
