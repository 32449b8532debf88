"""Aggregate real-dollar spend guard, independent of credit balance."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.base import BaseService
from src.database.models import (
    CostAlert,
    CostAlertType,
    CostThrottleCounter,
    CreditBalance,
    PlanTier,
    Subscription,
    utcnow,
)
from src.modules.ledger.errors import Throttled
from src.modules.ledger.store import LedgerStore
from src.utils.settings.ledger import LedgerSettings


@dataclass(frozen=True)
class ThrottleStatus:
    account_id: UUID
    plan_tier: PlanTier
    current_cost: Decimal
    limit: Decimal
    percent_used: float
    is_throttled: bool
    throttled_reason: str | None
    window_resets_at: datetime | None


class CostThrottleGuard(BaseService):
    """Tracks provider cost per account and blocks spends past the tier ceiling.

    Windows follow the account's billing period when it has a paid plan, and
    run for `BILLING_PERIOD_DAYS` from first use otherwise.
    """

    def __init__(self, db: AsyncSession, settings: LedgerSettings | None = None):
        super().__init__(db)
        self.settings = settings or LedgerSettings()

    def ceiling_for(self, plan_tier: PlanTier) -> Decimal:
        return {
            PlanTier.FREE: self.settings.COST_LIMIT_FREE_USD,
            PlanTier.INDIVIDUAL: self.settings.COST_LIMIT_INDIVIDUAL_USD,
            PlanTier.ORG_MEMBER: self.settings.COST_LIMIT_ORG_MEMBER_USD,
        }[PlanTier(plan_tier)]

    async def plan_tier(self, account_id: UUID) -> PlanTier:
        subscription = await self.db.get(Subscription, account_id)
        if subscription is None or not subscription.grants_allotment:
            return PlanTier.FREE
        return PlanTier(subscription.plan_tier)

    async def check(
        self, account_id: UUID, estimated_usd: Decimal | None = None
    ) -> None:
        """Raise `Throttled` if the account is flagged.

        With `estimated_usd`, also refuse (and flag the account) when the
        request would push the window past the ceiling.
        """
        counter = await self.db.get(
            CostThrottleCounter, account_id, populate_existing=True
        )
        if counter is not None and counter.is_throttled:
            raise Throttled(counter.throttled_reason, counter.window_resets_at)
        if not estimated_usd:
            return

        tier = await self.plan_tier(account_id)
        limit = self.ceiling_for(tier)
        current = counter.current_window_cost if counter else Decimal("0")
        if current + estimated_usd <= limit:
            return

        async with LedgerStore(self.db, self.settings).lock(account_id):
            counter = await self._locked_counter(account_id)
            if not counter.is_throttled:
                self._throttle(
                    counter,
                    f"Would exceed {tier.value} cost limit (${limit:.2f}) this period",
                    CostAlertType.PROJECTED_LIMIT,
                    limit,
                )
            reason, resets_at = counter.throttled_reason, counter.window_resets_at
        raise Throttled(reason, resets_at)

    async def add_usage(
        self, account_id: UUID, cost_usd: Decimal
    ) -> CostThrottleCounter:
        """Accumulate cost inside the caller's locked unit without committing."""
        counter = await self._locked_counter(account_id)
        counter.current_window_cost += cost_usd
        counter.lifetime_cost += cost_usd

        limit = self.ceiling_for(await self.plan_tier(account_id))
        percent = (
            float(counter.current_window_cost / limit * 100) if limit > 0 else 100.0
        )
        for threshold in sorted(self.settings.COST_ALERT_THRESHOLDS):
            if percent >= threshold > counter.last_alert_threshold:
                counter.last_alert_threshold = threshold
                self._raise_alert(
                    counter, CostAlertType.WARNING, limit, threshold=threshold
                )
                self.logger.warning(
                    "Cost alert threshold reached",
                    account_id=str(account_id),
                    threshold=threshold,
                    current_cost=str(counter.current_window_cost),
                    limit=str(limit),
                )

        if not counter.is_throttled and counter.current_window_cost > limit:
            self._throttle(
                counter,
                f"Cost limit exceeded: ${counter.current_window_cost:.2f} "
                f"of ${limit:.2f} this period",
                CostAlertType.LIMIT_EXCEEDED,
                limit,
            )
        return counter

    async def reset(self, account_id: UUID) -> None:
        """Clear the window and lift the flag now (admin override)."""
        async with LedgerStore(self.db, self.settings).lock(account_id):
            now = utcnow()
            counter = await self._locked_counter(account_id)
            was_throttled = counter.is_throttled
            self._reset_window(counter, now, await self._window_end(account_id, now))
        self.logger.info(
            "Cost window reset",
            account_id=str(account_id),
            was_throttled=was_throttled,
        )

    async def start_window(
        self, account_id: UUID, resets_at: datetime, now: datetime | None = None
    ) -> None:
        """Open a fresh window ending at `resets_at` inside the caller's lock."""
        counter = await self.db.scalar(
            select(CostThrottleCounter)
            .where(CostThrottleCounter.account_id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if counter is None:
            return
        if counter.is_throttled:
            self.logger.info("Lifting cost throttle", account_id=str(account_id))
        self._reset_window(counter, now or utcnow(), resets_at)

    async def reset_expired_windows(
        self, now: datetime | None = None, batch_size: int = 100
    ) -> int:
        """Clear every counter whose window has elapsed. Returns how many were reset."""
        now = now or utcnow()
        total = 0
        while True:
            result = await self.db.execute(
                select(CostThrottleCounter)
                .where(CostThrottleCounter.window_resets_at <= now)
                .limit(batch_size)
                .with_for_update(skip_locked=True)
            )
            counters = result.scalars().all()
            if not counters:
                break
            for counter in counters:
                if counter.is_throttled:
                    self.logger.info(
                        "Lifting cost throttle", account_id=str(counter.account_id)
                    )
                self._reset_window(
                    counter, now, await self._window_end(counter.account_id, now)
                )
            await self.db.commit()
            total += len(counters)
            if len(counters) < batch_size:
                break
        return total

    async def get_status(self, account_id: UUID) -> ThrottleStatus:
        counter = await self.db.get(
            CostThrottleCounter, account_id, populate_existing=True
        )
        tier = await self.plan_tier(account_id)
        limit = self.ceiling_for(tier)
        current = counter.current_window_cost if counter else Decimal("0")
        return ThrottleStatus(
            account_id=account_id,
            plan_tier=tier,
            current_cost=current,
            limit=limit,
            percent_used=round(float(current / limit * 100), 2) if limit > 0 else 0.0,
            is_throttled=bool(counter and counter.is_throttled),
            throttled_reason=counter.throttled_reason if counter else None,
            window_resets_at=counter.window_resets_at if counter else None,
        )

    async def list_alerts(self, account_id: UUID, limit: int = 50) -> list[CostAlert]:
        result = await self.db.execute(
            select(CostAlert)
            .where(CostAlert.account_id == account_id)
            .order_by(CostAlert.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _window_end(self, account_id: UUID, now: datetime) -> datetime:
        if await self.plan_tier(account_id) != PlanTier.FREE:
            balance = await self.db.get(CreditBalance, account_id)
            if (
                balance is not None
                and balance.monthly_reset_at is not None
                and balance.monthly_reset_at > now
            ):
                return balance.monthly_reset_at
        return now + timedelta(days=self.settings.BILLING_PERIOD_DAYS)

    async def _locked_counter(self, account_id: UUID) -> CostThrottleCounter:
        stmt = (
            select(CostThrottleCounter)
            .where(CostThrottleCounter.account_id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        counter = (await self.db.execute(stmt)).scalar_one_or_none()
        if counter is not None:
            return counter

        now = utcnow()
        counter = CostThrottleCounter(
            account_id=account_id,
            current_window_cost=Decimal("0"),
            lifetime_cost=Decimal("0"),
            window_started_at=now,
            window_resets_at=await self._window_end(account_id, now),
            last_alert_threshold=0,
            is_throttled=False,
        )
        # Callers hold the account's balance lock, so creation cannot race
        self.db.add(counter)
        await self.db.flush()
        return counter

    def _throttle(
        self,
        counter: CostThrottleCounter,
        reason: str,
        alert_type: CostAlertType,
        limit: Decimal,
    ) -> None:
        counter.is_throttled = True
        counter.throttled_at = utcnow()
        counter.throttled_reason = reason
        self._raise_alert(counter, alert_type, limit, reason=reason)
        self.logger.warning(
            "Account throttled", account_id=str(counter.account_id), reason=reason
        )

    def _raise_alert(
        self,
        counter: CostThrottleCounter,
        alert_type: CostAlertType,
        limit: Decimal,
        threshold: int | None = None,
        reason: str | None = None,
    ) -> None:
        self.db.add(
            CostAlert(
                account_id=counter.account_id,
                alert_type=alert_type,
                threshold_percent=threshold,
                limit_usd=limit,
                current_cost_usd=counter.current_window_cost,
                reason=reason,
                window_resets_at=counter.window_resets_at,
            )
        )

    def _reset_window(
        self, counter: CostThrottleCounter, now: datetime, resets_at: datetime
    ) -> None:
        counter.current_window_cost = Decimal("0")
        counter.window_started_at = now
        counter.window_resets_at = resets_at
        counter.last_alert_threshold = 0
        counter.is_throttled = False
        counter.throttled_reason = None
        counter.throttled_at = None
