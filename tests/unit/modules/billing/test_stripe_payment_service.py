"""Outbound Stripe calls, with the Stripe client mocked."""

from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest
import stripe  # type: ignore
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.core.exceptions.base import CreditLedgerException
from src.api.core.messages import MessageCode
from src.database.models import (
    CreditPackage,
    PlanTier,
    PurchaseStatus,
    Subscription,
    SubscriptionStatus,
)
from src.modules.billing.stripe.service import StripePaymentService
from src.modules.ledger.store import LedgerStore
from tests.utils.assertions import assert_ledger_exception


@pytest.fixture
def payment_service(db_session: AsyncSession) -> StripePaymentService:
    return StripePaymentService(db_session)


class TestCreditPurchase:
    @pytest.mark.asyncio
    async def test_creates_intent_and_pending_purchase(
        self, payment_service: StripePaymentService, store: LedgerStore
    ):
        account_id = uuid4()
        intent = MagicMock(id="pi_new_123", client_secret="pi_new_123_secret_abc")

        with patch("stripe.PaymentIntent.create", return_value=intent) as create:
            result = await payment_service.create_credit_purchase(
                account_id, CreditPackage.MEDIUM, idempotency_key="purchase-key-1"
            )

        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 1000
        assert kwargs["idempotency_key"] == "purchase-key-1"
        assert kwargs["metadata"] == {
            "account_id": str(account_id),
            "package": "medium",
            "credits": "250",
        }

        assert result.client_secret == "pi_new_123_secret_abc"
        assert result.purchase.stripe_payment_intent_id == "pi_new_123"
        assert result.purchase.credits == 250
        assert result.purchase.status == PurchaseStatus.PENDING

        # Credits only land when the payment succeeds
        snapshot = await store.get_balance(account_id)
        assert snapshot.purchased == 5

    @pytest.mark.asyncio
    async def test_stripe_failure_maps_to_bad_gateway(
        self, payment_service: StripePaymentService
    ):
        with patch(
            "stripe.PaymentIntent.create",
            side_effect=stripe.StripeError("card network unavailable"),
        ):
            with pytest.raises(CreditLedgerException) as exc_info:
                await payment_service.create_credit_purchase(
                    uuid4(), CreditPackage.SMALL, idempotency_key="purchase-key-2"
                )

        assert_ledger_exception(
            exc_info.value, MessageCode.EXTERNAL_SERVICE_ERROR, 502
        )


class TestSubscriptionCheckout:
    @pytest.mark.asyncio
    async def test_metadata_is_copied_to_subscription(
        self, payment_service: StripePaymentService
    ):
        account_id = uuid4()
        session = MagicMock(id="cs_test_1", url="https://checkout.stripe.com/c/cs_test_1")

        with patch("stripe.checkout.Session.create", return_value=session) as create:
            result = await payment_service.create_subscription_checkout(
                account_id,
                PlanTier.INDIVIDUAL,
                success_url="https://app.example.com/billing/success",
                cancel_url="https://app.example.com/billing",
            )

        assert result is session
        kwargs = create.call_args.kwargs
        assert kwargs["mode"] == "subscription"
        assert kwargs["line_items"] == [
            {"price": "price_individual_monthly", "quantity": 1}
        ]
        assert kwargs["subscription_data"]["metadata"] == {
            "account_id": str(account_id),
            "plan_tier": "individual",
        }

    @pytest.mark.asyncio
    async def test_free_tier_has_no_price(self, payment_service: StripePaymentService):
        with pytest.raises(CreditLedgerException) as exc_info:
            await payment_service.create_subscription_checkout(
                uuid4(), PlanTier.FREE, "https://a.example", "https://b.example"
            )

        assert_ledger_exception(exc_info.value, MessageCode.INVALID_INPUT, 400)


class TestCancelSubscription:
    @pytest.mark.asyncio
    async def test_cancels_at_period_end(
        self,
        payment_service: StripePaymentService,
        seed_account,
        subscription_factory,
        db_session: AsyncSession,
    ):
        balance = await seed_account()
        await subscription_factory.create_async(
            db_session,
            commit=True,
            account_id=balance.account_id,
            stripe_subscription_id="sub_to_cancel",
        )

        with patch("stripe.Subscription.modify") as modify:
            subscription = await payment_service.cancel_subscription(
                balance.account_id
            )

        modify.assert_called_once_with("sub_to_cancel", cancel_at_period_end=True)
        assert subscription.status == SubscriptionStatus.CANCELING
        stored = await db_session.get(
            Subscription, balance.account_id, populate_existing=True
        )
        assert stored.status == SubscriptionStatus.CANCELING

    @pytest.mark.asyncio
    async def test_without_subscription(self, payment_service: StripePaymentService):
        with pytest.raises(CreditLedgerException) as exc_info:
            await payment_service.cancel_subscription(uuid4())

        assert_ledger_exception(
            exc_info.value, MessageCode.SUBSCRIPTION_NOT_FOUND, 404
        )
