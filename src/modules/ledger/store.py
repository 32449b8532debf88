"""Authoritative per-account credit balances and the transaction log."""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import TypeVar
from uuid import UUID

from sqlalchemy import func, select, text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.base import BaseService
from src.database.models import CreditBalance, CreditTransaction, TransactionReason
from src.modules.ledger.errors import (
    AccountNotFound,
    ConcurrentMutationTimeout,
    InsufficientBalance,
)
from src.utils.settings.ledger import LedgerSettings

T = TypeVar("T")

# PostgreSQL "lock_not_available"
_LOCK_NOT_AVAILABLE = "55P03"


@dataclass(frozen=True)
class PoolDelta:
    """Signed change per credit pool."""

    monthly: int = 0
    rollover: int = 0
    purchased: int = 0

    @property
    def total(self) -> int:
        return self.monthly + self.rollover + self.purchased

    def as_dict(self) -> dict[str, int]:
        return {
            "monthly": self.monthly,
            "rollover": self.rollover,
            "purchased": self.purchased,
        }


@dataclass(frozen=True)
class BalanceSnapshot:
    account_id: UUID
    monthly: int
    rollover: int
    purchased: int
    monthly_allotment: int
    monthly_reset_at: datetime | None
    rollover_expires_at: datetime | None

    @property
    def total(self) -> int:
        return self.monthly + self.rollover + self.purchased

    @classmethod
    def from_balance(cls, balance: CreditBalance) -> "BalanceSnapshot":
        return cls(
            account_id=balance.account_id,
            monthly=balance.monthly_credits,
            rollover=balance.rollover_credits,
            purchased=balance.purchased_credits,
            monthly_allotment=balance.monthly_allotment,
            monthly_reset_at=balance.monthly_reset_at,
            rollover_expires_at=balance.rollover_expires_at,
        )


def _is_lock_timeout(exc: DBAPIError) -> bool:
    if getattr(exc.orig, "sqlstate", None) == _LOCK_NOT_AVAILABLE:
        return True
    return "database is locked" in str(exc.orig)


async def with_lock_retry(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 3,
    backoff_ms: int = 50,
) -> T:
    """Run `operation`, retrying with linear backoff when the account lock is busy."""
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except ConcurrentMutationTimeout:
            if attempt >= attempts:
                raise
            await asyncio.sleep(backoff_ms * attempt / 1000)
    raise ValueError("attempts must be at least 1")


class LedgerStore(BaseService):
    """Single serialization point for every balance mutation.

    All writers go through `lock` + `apply` (or `mutate`, which combines
    them), so the balance update and its transaction row always commit
    together and replaying the log reconstructs the balance.
    """

    def __init__(self, db: AsyncSession, settings: LedgerSettings | None = None):
        super().__init__(db)
        self.settings = settings or LedgerSettings()

    async def get_balance(self, account_id: UUID) -> BalanceSnapshot:
        balance = await self.db.get(CreditBalance, account_id, populate_existing=True)
        if balance is None:
            raise AccountNotFound(details={"account_id": str(account_id)})
        return BalanceSnapshot.from_balance(balance)

    async def open_account(
        self, account_id: UUID, signup_grant: int | None = None
    ) -> BalanceSnapshot:
        """Create the balance row with its signup grant. Safe to call repeatedly."""
        existing = await self.db.get(CreditBalance, account_id)
        if existing is not None:
            return BalanceSnapshot.from_balance(existing)

        grant = (
            self.settings.SIGNUP_GRANT_CREDITS if signup_grant is None else signup_grant
        )
        balance = CreditBalance(
            account_id=account_id,
            monthly_credits=0,
            monthly_allotment=0,
            rollover_credits=0,
            purchased_credits=0,
            lifetime_earned=0,
            lifetime_spent=0,
        )
        self.db.add(balance)
        try:
            await self.db.flush()
        except IntegrityError:
            # Opened concurrently by another request
            await self.db.rollback()
            return await self.get_balance(account_id)

        if grant > 0:
            await self.apply(
                balance,
                PoolDelta(purchased=grant),
                TransactionReason.SIGNUP_GRANT,
                correlation_id=f"signup:{account_id}",
                description="Signup credits",
            )
        await self.db.commit()
        self.logger.info(
            "Opened credit account", account_id=str(account_id), signup_grant=grant
        )
        return BalanceSnapshot.from_balance(balance)

    @asynccontextmanager
    async def lock(self, account_id: UUID) -> AsyncIterator[CreditBalance]:
        """Hold the account's row lock for one atomic unit.

        Commits on clean exit and rolls back on any error, so nothing done
        under the lock is ever partially applied.
        """
        balance = await self._acquire(account_id)
        try:
            yield balance
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

    async def _acquire(self, account_id: UUID) -> CreditBalance:
        timeout_ms = self.settings.LEDGER_LOCK_TIMEOUT_MS
        try:
            if self.db.get_bind().dialect.name == "postgresql":
                await self.db.execute(
                    text(f"SET LOCAL lock_timeout = '{int(timeout_ms)}ms'")
                )
            result = await self.db.execute(
                select(CreditBalance)
                .where(CreditBalance.account_id == account_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            balance = result.scalar_one_or_none()
        except DBAPIError as exc:
            await self.db.rollback()
            if _is_lock_timeout(exc):
                self.logger.warning(
                    "Timed out waiting for ledger lock",
                    account_id=str(account_id),
                    timeout_ms=timeout_ms,
                )
                raise ConcurrentMutationTimeout(
                    details={"account_id": str(account_id), "timeout_ms": timeout_ms}
                ) from exc
            raise

        if balance is None:
            await self.db.rollback()
            raise AccountNotFound(details={"account_id": str(account_id)})
        return balance

    async def apply(
        self,
        balance: CreditBalance,
        delta: PoolDelta,
        reason: TransactionReason,
        correlation_id: str | None = None,
        description: str | None = None,
        details: dict | None = None,
    ) -> CreditTransaction:
        """Apply `delta` to a locked balance and append its transaction row."""
        monthly = balance.monthly_credits + delta.monthly
        rollover = balance.rollover_credits + delta.rollover
        purchased = balance.purchased_credits + delta.purchased
        if min(monthly, rollover, purchased) < 0:
            raise InsufficientBalance(
                details={
                    "available": BalanceSnapshot.from_balance(balance).total,
                    "requested": -delta.total,
                    "reason": reason.value,
                }
            )

        balance.monthly_credits = monthly
        balance.rollover_credits = rollover
        balance.purchased_credits = purchased
        if reason == TransactionReason.SPEND:
            balance.lifetime_spent -= delta.total
        elif delta.total > 0:
            balance.lifetime_earned += delta.total

        transaction = CreditTransaction(
            account_id=balance.account_id,
            amount=delta.total,
            monthly_delta=delta.monthly,
            rollover_delta=delta.rollover,
            purchased_delta=delta.purchased,
            balance_after=balance.total_credits,
            reason=reason,
            correlation_id=correlation_id,
            description=description,
            details=details or {},
        )
        self.db.add(transaction)
        await self.db.flush()

        self.logger.info(
            "Ledger mutation",
            account_id=str(balance.account_id),
            reason=reason.value,
            delta=delta.total,
            balance_after=transaction.balance_after,
            correlation_id=correlation_id,
        )
        return transaction

    async def mutate(
        self,
        account_id: UUID,
        delta: PoolDelta,
        reason: TransactionReason,
        correlation_id: str | None = None,
        description: str | None = None,
        details: dict | None = None,
    ) -> CreditTransaction:
        """Lock, apply and commit a single mutation."""
        async with self.lock(account_id) as balance:
            return await self.apply(
                balance, delta, reason, correlation_id, description, details
            )

    async def find_transaction(
        self, correlation_id: str, reason: TransactionReason | None = None
    ) -> CreditTransaction | None:
        stmt = select(CreditTransaction).where(
            CreditTransaction.correlation_id == correlation_id
        )
        if reason is not None:
            stmt = stmt.where(CreditTransaction.reason == reason)
        result = await self.db.execute(stmt.order_by(CreditTransaction.id).limit(1))
        return result.scalar_one_or_none()

    async def list_transactions(
        self,
        account_id: UUID,
        reason: TransactionReason | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[CreditTransaction], int]:
        """Newest-first page of an account's transactions plus the total count."""
        conditions = [CreditTransaction.account_id == account_id]
        if reason is not None:
            conditions.append(CreditTransaction.reason == reason)

        total = await self.db.scalar(
            select(func.count()).select_from(CreditTransaction).where(*conditions)
        )
        result = await self.db.execute(
            select(CreditTransaction)
            .where(*conditions)
            .order_by(CreditTransaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total or 0

    async def replay_total(self, account_id: UUID) -> int:
        """Balance reconstructed from the transaction log alone."""
        total = await self.db.scalar(
            select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
                CreditTransaction.account_id == account_id
            )
        )
        return int(total or 0)
