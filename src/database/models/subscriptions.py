"""Subscription state driving monthly allotments."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, UTCDateTime, utcnow


class PlanTier(str, Enum):
    FREE = "free"
    INDIVIDUAL = "individual"
    ORG_MEMBER = "org-member"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELING = "canceling"
    CANCELED = "canceled"


class Subscription(Base):
    __tablename__ = "credit_subscriptions"

    account_id: Mapped[UUID] = mapped_column(
        ForeignKey("credit_balances.account_id"), primary_key=True
    )
    stripe_subscription_id: Mapped[str] = mapped_column(
        String, unique=True, nullable=False
    )
    stripe_customer_id: Mapped[str | None] = mapped_column(
        String, nullable=True, index=True
    )
    plan_tier: Mapped[PlanTier] = mapped_column(String, nullable=False)
    status: Mapped[SubscriptionStatus] = mapped_column(String, nullable=False)
    current_period_end: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    # Period end for which the monthly allotment was already granted
    granted_period_end: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    # Creation time of the newest Stripe event applied; older deliveries are skipped
    last_event_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow
    )

    @property
    def grants_allotment(self) -> bool:
        return self.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELING)
