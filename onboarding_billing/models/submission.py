from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from onboarding_billing.db.base import Base

SUBMISSION_STATUSES = ("submitted", "preview_sent", "paid", "completed", "cancelled")
PAYABLE_STATUSES = ("submitted", "preview_sent")


class Submission(Base):
    __tablename__ = "onboarding_submissions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    session_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    business_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    form_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="submitted",
        server_default="submitted",
    )
    payment_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True, index=True)
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True, index=True)
    stripe_subscription_schedule_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True, index=True)
    stripe_invoice_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True, index=True)
    stripe_payment_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True, index=True)
    subscription_status: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    checkout_fingerprint: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    checkout_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_summary: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    payment_tax_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    payment_tax_currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        Index("ix_onboarding_submissions_status_created_at", "status", "created_at"),
    )
