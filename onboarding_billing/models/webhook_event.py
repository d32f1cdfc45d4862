from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, String, Text, false, func
from sqlalchemy.orm import Mapped, mapped_column

from onboarding_billing.db.base import Base

LEDGER_STATUSES = ("processing", "completed", "failed")


class PaymentWebhookEvent(Base):
    """Append-only record of every provider event id ever accepted."""

    __tablename__ = "payment_webhook_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(120), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="processing",
        server_default="processing",
    )
    livemode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_payment_webhook_events_status_received_at", "status", "received_at"),
        Index("ix_payment_webhook_events_type_received_at", "event_type", "received_at"),
    )
