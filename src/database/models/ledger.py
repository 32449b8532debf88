"""Credit balance and transaction log models."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, UTCDateTime, utcnow


class TransactionReason(str, Enum):
    SIGNUP_GRANT = "signup-grant"
    MONTHLY_GRANT = "monthly-grant"
    PURCHASE = "purchase"
    SPEND = "spend"
    ROLLOVER_CONVERSION = "rollover-conversion"
    ROLLOVER_EXPIRY = "rollover-expiry"
    REFUND_CLAWBACK = "refund-clawback"
    BONUS = "bonus"
    ADMIN_ADJUSTMENT = "admin-adjustment"


class CreditBalance(Base):
    __tablename__ = "credit_balances"
    __table_args__ = (
        CheckConstraint("monthly_credits >= 0", name="ck_credit_balances_monthly"),
        CheckConstraint("rollover_credits >= 0", name="ck_credit_balances_rollover"),
        CheckConstraint(
            "purchased_credits >= 0", name="ck_credit_balances_purchased"
        ),
    )

    account_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    monthly_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Allotment captured at the most recent grant or rotation
    monthly_allotment: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    monthly_reset_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, index=True
    )
    rollover_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rollover_expires_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, index=True
    )
    purchased_credits: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    lifetime_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lifetime_spent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow
    )

    @property
    def total_credits(self) -> int:
        return self.monthly_credits + self.rollover_credits + self.purchased_credits


class CreditTransaction(Base):
    """Append-only record of every balance mutation."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint(
            "reason", "correlation_id", name="uq_credit_transactions_reason_correlation"
        ),
        Index("ix_credit_transactions_account_id_id", "account_id", "id"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    account_id: Mapped[UUID] = mapped_column(
        ForeignKey("credit_balances.account_id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    monthly_delta: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rollover_delta: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    purchased_delta: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[TransactionReason] = mapped_column(String, nullable=False)
    correlation_id: Mapped[str | None] = mapped_column(
        String, nullable=True, index=True
    )
    description: Mapped[str | None] = mapped_column(String, nullable=True)
    details: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
