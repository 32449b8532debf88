"""Processed payment provider webhook events."""

from datetime import datetime
from uuid import UUID

from sqlalchemy import String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, UTCDateTime, utcnow


class ProcessedWebhookEvent(Base):
    __tablename__ = "processed_webhook_events"

    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    account_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
