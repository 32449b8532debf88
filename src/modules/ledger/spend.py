"""Priority-ordered credit debits and post-execution corrections."""

from dataclasses import dataclass
from uuid import UUID

from fastapi import status
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.core.exceptions.base import CreditLedgerException
from src.api.core.messages import MessageCode
from src.core.base import BaseService
from src.database.models import CreditBalance, CreditTransaction, TransactionReason
from src.modules.ledger.constants import DEFAULT_MODEL
from src.modules.ledger.errors import (
    CorrelationConflict,
    InsufficientBalance,
    SpendNotFound,
)
from src.modules.ledger.pricing import PricingEngine
from src.modules.ledger.store import LedgerStore, PoolDelta
from src.modules.ledger.throttle import CostThrottleGuard
from src.utils.settings.ledger import LedgerSettings

CORRECTION_SUFFIX = ":correction"


@dataclass(frozen=True)
class SpendResult:
    account_id: UUID
    correlation_id: str
    transaction_id: int
    cost: int
    breakdown: PoolDelta
    remaining_balance: int
    replayed: bool = False


@dataclass(frozen=True)
class CorrectionResult:
    account_id: UUID
    correlation_id: str
    charged_cost: int
    actual_cost: int
    # Positive when credits went back to the account
    adjustment: int
    shortfall: int
    remaining_balance: int
    transaction_id: int
    replayed: bool = False


def plan_debit(balance: CreditBalance, amount: int) -> PoolDelta:
    """Take `amount` from monthly, then rollover, then purchased."""
    from_monthly = min(balance.monthly_credits, amount)
    remaining = amount - from_monthly
    from_rollover = min(balance.rollover_credits, remaining)
    remaining -= from_rollover
    from_purchased = min(balance.purchased_credits, remaining)
    return PoolDelta(
        monthly=-from_monthly, rollover=-from_rollover, purchased=-from_purchased
    )


def plan_refund(
    original: CreditTransaction, balance: CreditBalance, amount: int
) -> PoolDelta:
    """Return `amount` to the pools the original spend drew from.

    Longest-lived pools are refilled first. Rollover never grows past the
    current allotment; any overflow lands in the monthly pool instead.
    """
    to_purchased = min(-original.purchased_delta, amount)
    remaining = amount - to_purchased
    to_rollover = min(-original.rollover_delta, remaining)
    if balance.monthly_allotment > 0:
        headroom = max(balance.monthly_allotment - balance.rollover_credits, 0)
        to_rollover = min(to_rollover, headroom)
    remaining -= to_rollover
    return PoolDelta(monthly=remaining, rollover=to_rollover, purchased=to_purchased)


class SpendCoordinator(BaseService):
    def __init__(
        self,
        db: AsyncSession,
        settings: LedgerSettings | None = None,
        pricing: PricingEngine | None = None,
    ):
        super().__init__(db)
        self.settings = settings or LedgerSettings()
        self.pricing = pricing or PricingEngine.from_settings(self.settings)
        self.store = LedgerStore(db, self.settings)
        self.throttle = CostThrottleGuard(db, self.settings)

    async def spend(
        self,
        account_id: UUID,
        cost: int,
        correlation_id: str,
        model: str | None = None,
        estimated_tokens: int | None = None,
    ) -> SpendResult:
        """Debit `cost` credits all-or-nothing.

        Replaying a correlation id returns the original result instead of
        debiting again.
        """
        if cost <= 0:
            raise ValueError("cost must be positive")
        if correlation_id.endswith(CORRECTION_SUFFIX):
            # Reserved for the correction written against each spend
            raise CreditLedgerException(
                MessageCode.INVALID_INPUT,
                status.HTTP_400_BAD_REQUEST,
                details={
                    "correlation_id": correlation_id,
                    "description": f"Correlation ids may not end with "
                    f"'{CORRECTION_SUFFIX}'",
                },
            )
        if model is not None:
            self.pricing.multiplier(model)
        estimated_usd = None
        if estimated_tokens is not None:
            # Oversized requests are refused before any debit
            self.pricing.quote(estimated_tokens, model or DEFAULT_MODEL.value)
            estimated_usd = self.pricing.provider_cost_usd(
                estimated_tokens, model or DEFAULT_MODEL.value
            )

        existing = await self.store.find_transaction(
            correlation_id, TransactionReason.SPEND
        )
        if existing is not None:
            return await self._replayed_spend(existing, account_id)

        await self.throttle.check(account_id, estimated_usd)

        async with self.store.lock(account_id) as balance:
            # A concurrent request may have won the race for this correlation id
            existing = await self.store.find_transaction(
                correlation_id, TransactionReason.SPEND
            )
            if existing is not None:
                return await self._replayed_spend(existing, account_id)

            if balance.total_credits < cost:
                raise InsufficientBalance(
                    details={
                        "required": cost,
                        "available": balance.total_credits,
                    }
                )

            delta = plan_debit(balance, cost)
            transaction = await self.store.apply(
                balance,
                delta,
                TransactionReason.SPEND,
                correlation_id=correlation_id,
                description=f"Playground run ({model or DEFAULT_MODEL.value})",
                details={
                    "model": model or DEFAULT_MODEL.value,
                    "estimated_tokens": estimated_tokens,
                    "breakdown": delta.as_dict(),
                },
            )
            result = SpendResult(
                account_id=account_id,
                correlation_id=correlation_id,
                transaction_id=transaction.id,
                cost=cost,
                breakdown=delta,
                remaining_balance=transaction.balance_after,
            )
        return result

    async def estimate_and_spend(
        self,
        account_id: UUID,
        estimated_tokens: int,
        correlation_id: str,
        model: str = DEFAULT_MODEL.value,
    ) -> SpendResult:
        cost = self.pricing.quote(estimated_tokens, model)
        return await self.spend(
            account_id,
            cost,
            correlation_id,
            model=model,
            estimated_tokens=estimated_tokens,
        )

    async def correct(
        self, correlation_id: str, actual_tokens: int
    ) -> CorrectionResult:
        """Settle a spend against the tokens actually used.

        Writes exactly one corrective transaction per spend (possibly of zero
        credits, which still records the provider cost exactly once).
        """
        original = await self.store.find_transaction(
            correlation_id, TransactionReason.SPEND
        )
        if original is None:
            raise SpendNotFound(details={"correlation_id": correlation_id})

        correction_id = correlation_id + CORRECTION_SUFFIX
        existing = await self.store.find_transaction(
            correction_id, TransactionReason.SPEND
        )
        if existing is not None:
            return self._correction_result(existing, original, replayed=True)

        model = original.details.get("model") or DEFAULT_MODEL.value
        charged = -original.amount
        actual = self.pricing.actual_cost(actual_tokens, model)
        provider_cost = self.pricing.provider_cost_usd(actual_tokens, model)

        async with self.store.lock(original.account_id) as balance:
            existing = await self.store.find_transaction(
                correction_id, TransactionReason.SPEND
            )
            if existing is not None:
                return self._correction_result(existing, original, replayed=True)

            difference = actual - charged
            shortfall = 0
            if difference < 0:
                delta = plan_refund(original, balance, -difference)
            else:
                delta = plan_debit(balance, difference)
                shortfall = difference + delta.total
                if shortfall:
                    self.logger.warning(
                        "Spend correction exceeds available balance",
                        account_id=str(original.account_id),
                        correlation_id=correlation_id,
                        shortfall=shortfall,
                    )

            transaction = await self.store.apply(
                balance,
                delta,
                TransactionReason.SPEND,
                correlation_id=correction_id,
                description="Usage correction",
                details={
                    "correction": True,
                    "model": model,
                    "charged_cost": charged,
                    "actual_cost": actual,
                    "actual_tokens": actual_tokens,
                    "shortfall": shortfall,
                    "provider_cost_usd": str(provider_cost),
                    "breakdown": delta.as_dict(),
                },
            )
            await self.throttle.add_usage(original.account_id, provider_cost)
            result = self._correction_result(transaction, original)
        return result

    async def _replayed_spend(
        self, existing: CreditTransaction, account_id: UUID
    ) -> SpendResult:
        if existing.account_id != account_id:
            raise CorrelationConflict(
                details={"correlation_id": existing.correlation_id}
            )
        breakdown = existing.details.get("breakdown") or {}
        snapshot = await self.store.get_balance(account_id)
        self.logger.info(
            "Spend replayed",
            account_id=str(account_id),
            correlation_id=existing.correlation_id,
        )
        return SpendResult(
            account_id=account_id,
            correlation_id=existing.correlation_id or "",
            transaction_id=existing.id,
            cost=-existing.amount,
            breakdown=PoolDelta(**breakdown),
            remaining_balance=snapshot.total,
            replayed=True,
        )

    @staticmethod
    def _correction_result(
        transaction: CreditTransaction,
        original: CreditTransaction,
        replayed: bool = False,
    ) -> CorrectionResult:
        details = transaction.details
        return CorrectionResult(
            account_id=original.account_id,
            correlation_id=original.correlation_id or "",
            charged_cost=details.get("charged_cost", -original.amount),
            actual_cost=details.get("actual_cost", -original.amount),
            adjustment=transaction.amount,
            shortfall=details.get("shortfall", 0),
            remaining_balance=transaction.balance_after,
            transaction_id=transaction.id,
            replayed=replayed,
        )
