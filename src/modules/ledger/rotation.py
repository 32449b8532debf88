"""Recurring bucket rotation: monthly resets, rollover expiry, throttle windows."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.base import BaseService
from src.database.models import (
    CreditBalance,
    PlanTier,
    Subscription,
    SubscriptionStatus,
    TransactionReason,
    utcnow,
)
from src.modules.ledger.errors import AccountNotFound, ConcurrentMutationTimeout
from src.modules.ledger.store import LedgerStore, PoolDelta
from src.modules.ledger.throttle import CostThrottleGuard
from src.redis.client import redis_key
from src.utils.settings.ledger import LedgerSettings


@dataclass
class RotationReport:
    rotated: int = 0
    expired: int = 0
    throttles_reset: int = 0
    skipped: int = 0


class BucketRotationService(BaseService):
    """Moves credits between pools on the billing cadence.

    Every pass selects candidates without locking, then re-checks each one
    under the account lock, so running a pass twice changes nothing the
    second time. The optional Redis marker only keeps parallel scheduler
    instances from queueing on the same account.
    """

    def __init__(
        self,
        db: AsyncSession,
        redis_client: redis.Redis | None = None,
        settings: LedgerSettings | None = None,
    ):
        super().__init__(db)
        self.redis = redis_client
        self.settings = settings or LedgerSettings()
        self.store = LedgerStore(db, self.settings)
        self.throttle = CostThrottleGuard(db, self.settings)

    async def run(self, now: datetime | None = None) -> RotationReport:
        now = now or utcnow()
        report = RotationReport()
        await self.rotate_monthly(now, report)
        await self.expire_rollovers(now, report)
        report.throttles_reset = await self.throttle.reset_expired_windows(
            now, self.settings.ROTATION_BATCH_SIZE
        )
        self.logger.info(
            "Bucket rotation finished",
            rotated=report.rotated,
            expired=report.expired,
            throttles_reset=report.throttles_reset,
            skipped=report.skipped,
        )
        return report

    async def rotate_monthly(
        self, now: datetime, report: RotationReport | None = None
    ) -> RotationReport:
        report = report or RotationReport()
        stmt = (
            select(CreditBalance.account_id)
            .join(Subscription, Subscription.account_id == CreditBalance.account_id)
            .where(
                CreditBalance.monthly_reset_at <= now,
                Subscription.status.in_(
                    [SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELING]
                ),
            )
        )
        async for account_id in self._candidates(stmt):
            if await self._rotate_account(account_id, now):
                report.rotated += 1
            else:
                report.skipped += 1
        return report

    async def expire_rollovers(
        self, now: datetime, report: RotationReport | None = None
    ) -> RotationReport:
        report = report or RotationReport()
        stmt = select(CreditBalance.account_id).where(
            CreditBalance.rollover_expires_at <= now,
            CreditBalance.rollover_credits > 0,
        )
        async for account_id in self._candidates(stmt):
            if await self._expire_account(account_id, now):
                report.expired += 1
            else:
                report.skipped += 1
        return report

    async def _candidates(self, stmt):
        """Yield account ids in keyset-paginated batches."""
        last_id: UUID | None = None
        batch_size = self.settings.ROTATION_BATCH_SIZE
        while True:
            page = stmt.order_by(CreditBalance.account_id).limit(batch_size)
            if last_id is not None:
                page = page.where(CreditBalance.account_id > last_id)
            account_ids = list((await self.db.execute(page)).scalars().all())
            # Release the read transaction before per-account locking
            await self.db.commit()
            for account_id in account_ids:
                yield account_id
            if len(account_ids) < batch_size:
                return
            last_id = account_ids[-1]

    async def _rotate_account(self, account_id: UUID, now: datetime) -> bool:
        if not await self._claim(account_id, "monthly"):
            return False
        try:
            async with self.store.lock(account_id) as balance:
                subscription = await self.db.get(
                    Subscription, account_id, populate_existing=True
                )
                reset_at = balance.monthly_reset_at
                if not self._due_for_rotation(balance, subscription, now):
                    return False

                plan_tier = PlanTier(subscription.plan_tier)
                allotment = self.settings.monthly_allotment(plan_tier)
                unused = balance.monthly_credits
                carried = (
                    min(unused, allotment)
                    if self.settings.ROLLOVER_CAP_ENABLED
                    else unused
                )
                next_reset = self._next_reset(reset_at, subscription, now)
                correlation_id = f"rotation:{account_id}:{reset_at.isoformat()}"

                await self.store.apply(
                    balance,
                    PoolDelta(
                        monthly=-unused, rollover=carried - balance.rollover_credits
                    ),
                    TransactionReason.ROLLOVER_CONVERSION,
                    correlation_id=correlation_id,
                    description="Unused monthly credits rolled over",
                    details={
                        "unused_monthly": unused,
                        "carried": carried,
                        "discarded": unused - carried,
                        "replaced_rollover": balance.rollover_credits,
                    },
                )
                balance.rollover_expires_at = next_reset if carried > 0 else None
                balance.monthly_allotment = allotment
                balance.monthly_reset_at = next_reset
                subscription.granted_period_end = next_reset
                # The cost window turns over with the billing period
                await self.throttle.start_window(account_id, next_reset, now)
                if allotment > 0:
                    await self.store.apply(
                        balance,
                        PoolDelta(monthly=allotment),
                        TransactionReason.MONTHLY_GRANT,
                        correlation_id=correlation_id,
                        description=f"Monthly {plan_tier.value} allotment",
                        details={
                            "allotment": allotment,
                            "period_end": next_reset.isoformat(),
                        },
                    )
        except (ConcurrentMutationTimeout, AccountNotFound) as e:
            self.logger.warning(
                "Skipping monthly rotation",
                account_id=str(account_id),
                error=e.message_code.value,
            )
            return False
        return True

    def _due_for_rotation(
        self,
        balance: CreditBalance,
        subscription: Subscription | None,
        now: datetime,
    ) -> bool:
        if balance.monthly_reset_at is None or balance.monthly_reset_at > now:
            return False
        if subscription is None or not subscription.grants_allotment:
            return False
        # A canceling plan only rotates while Stripe still bills a later period
        if subscription.status == SubscriptionStatus.CANCELING:
            return (
                subscription.current_period_end is not None
                and subscription.current_period_end > now
            )
        return True

    def _next_reset(
        self, reset_at: datetime, subscription: Subscription, now: datetime
    ) -> datetime:
        if subscription.current_period_end and subscription.current_period_end > now:
            return subscription.current_period_end
        period = timedelta(days=self.settings.BILLING_PERIOD_DAYS)
        next_reset = reset_at
        while next_reset <= now:
            next_reset += period
        return next_reset

    async def _expire_account(self, account_id: UUID, now: datetime) -> bool:
        if not await self._claim(account_id, "expiry"):
            return False
        try:
            async with self.store.lock(account_id) as balance:
                expires_at = balance.rollover_expires_at
                if (
                    expires_at is None
                    or expires_at > now
                    or balance.rollover_credits <= 0
                ):
                    return False
                await self.store.apply(
                    balance,
                    PoolDelta(rollover=-balance.rollover_credits),
                    TransactionReason.ROLLOVER_EXPIRY,
                    correlation_id=f"expiry:{account_id}:{expires_at.isoformat()}",
                    description="Rollover credits expired",
                    details={"expired_at": expires_at.isoformat()},
                )
                balance.rollover_expires_at = None
        except (ConcurrentMutationTimeout, AccountNotFound) as e:
            self.logger.warning(
                "Skipping rollover expiry",
                account_id=str(account_id),
                error=e.message_code.value,
            )
            return False
        return True

    async def _claim(self, account_id: UUID, kind: str) -> bool:
        """Best-effort cross-instance marker. Fails open when Redis is down."""
        if self.redis is None:
            return True
        key = redis_key("rotation", kind, account_id)
        try:
            claimed = await self.redis.set(
                key,
                utcnow().isoformat(),
                nx=True,
                ex=self.settings.ROTATION_MARKER_TTL_SECONDS,
            )
        except RedisError as e:
            self.logger.warning(
                "Rotation marker unavailable", account_id=str(account_id), error=str(e)
            )
            return True
        if not claimed:
            self.logger.debug(
                "Rotation marker held elsewhere", account_id=str(account_id), kind=kind
            )
        return bool(claimed)
