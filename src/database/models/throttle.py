"""Real-dollar cost accumulator per account."""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Integer, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, UTCDateTime, utcnow


class CostAlertType(str, Enum):
    WARNING = "warning"
    LIMIT_EXCEEDED = "limit-exceeded"
    PROJECTED_LIMIT = "projected-limit"


class CostThrottleCounter(Base):
    __tablename__ = "cost_throttle_counters"

    account_id: Mapped[UUID] = mapped_column(
        ForeignKey("credit_balances.account_id"), primary_key=True
    )
    current_window_cost: Mapped[Decimal] = mapped_column(
        Numeric(12, 6), nullable=False, default=Decimal("0")
    )
    lifetime_cost: Mapped[Decimal] = mapped_column(
        Numeric(14, 6), nullable=False, default=Decimal("0")
    )
    window_started_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    window_resets_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, index=True
    )
    # Highest alert threshold (percent of the ceiling) already raised this window
    last_alert_threshold: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    is_throttled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    throttled_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    throttled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow
    )


class CostAlert(Base):
    """Cost warnings and throttle events raised against an account's window."""

    __tablename__ = "cost_alerts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[UUID] = mapped_column(
        ForeignKey("credit_balances.account_id"), nullable=False, index=True
    )
    alert_type: Mapped[CostAlertType] = mapped_column(String, nullable=False)
    # Percent of the ceiling for warnings; empty for throttle events
    threshold_percent: Mapped[int | None] = mapped_column(Integer, nullable=True)
    limit_usd: Mapped[Decimal] = mapped_column(Numeric(12, 6), nullable=False)
    current_cost_usd: Mapped[Decimal] = mapped_column(Numeric(12, 6), nullable=False)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    window_resets_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
