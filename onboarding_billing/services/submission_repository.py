import uuid
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from onboarding_billing.models.payment import PaymentDetails
from onboarding_billing.models.submission import PAYABLE_STATUSES, Submission

# Checked in this order when an event has to be tied back to a submission.
CORRELATION_COLUMNS = (
    ("schedule_id", Submission.stripe_subscription_schedule_id),
    ("subscription_id", Submission.stripe_subscription_id),
    ("customer_id", Submission.stripe_customer_id),
    ("invoice_id", Submission.stripe_invoice_id),
    ("payment_id", Submission.stripe_payment_id),
)

_ID_FIELDS = {
    "customer_id": "stripe_customer_id",
    "subscription_id": "stripe_subscription_id",
    "schedule_id": "stripe_subscription_schedule_id",
    "invoice_id": "stripe_invoice_id",
    "payment_id": "stripe_payment_id",
}


class SubmissionRepository:
    """Reads and conditional writes on submissions and their payment rows.

    Writes that webhook handlers race on are single ``UPDATE ... WHERE``
    statements, so applying the same event twice leaves the row unchanged.
    Apart from ``ensure_payment_details`` nothing here commits; callers own
    the transaction.
    """

    def __init__(self, db: Session):
        self.db = db

    def get(self, submission_id: str) -> Submission | None:
        return self.db.execute(select(Submission).where(Submission.id == submission_id)).scalar_one_or_none()

    def find_for_event(
        self,
        *,
        submission_id: str | None = None,
        **provider_ids: str | None,
    ) -> Submission | None:
        if submission_id:
            submission = self.get(submission_id)
            if submission:
                return submission
        for key, column in CORRELATION_COLUMNS:
            value = provider_ids.get(key)
            if not value:
                continue
            submission = self.db.execute(
                select(Submission).where(column == value).order_by(Submission.created_at.desc()).limit(1)
            ).scalar_one_or_none()
            if submission:
                return submission
        return None

    def get_payment_details(self, submission_id: str) -> PaymentDetails | None:
        return self.db.execute(
            select(PaymentDetails).where(PaymentDetails.submission_id == submission_id)
        ).scalar_one_or_none()

    def mark_payment_completed(self, submission_id: str, paid_at: datetime) -> bool:
        """Sets ``payment_completed_at`` once. True only for the call that set it."""
        result = self.db.execute(
            update(Submission)
            .where(Submission.id == submission_id, Submission.payment_completed_at.is_(None))
            .values(payment_completed_at=paid_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def claim_checkout(self, submission_id: str, now: datetime, stale_before: datetime) -> bool:
        """Marks a checkout as being built. False while another unexpired claim holds the row."""
        result = self.db.execute(
            update(Submission)
            .where(
                Submission.id == submission_id,
                or_(Submission.checkout_started_at.is_(None), Submission.checkout_started_at < stale_before),
            )
            .values(checkout_started_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def release_checkout(self, submission_id: str) -> None:
        self.db.execute(
            update(Submission)
            .where(Submission.id == submission_id)
            .values(checkout_started_at=None)
            .execution_options(synchronize_session=False)
        )

    def transition_status(self, submission_id: str, to_status: str, *, from_statuses: Iterable[str]) -> bool:
        result = self.db.execute(
            update(Submission)
            .where(Submission.id == submission_id, Submission.status.in_(tuple(from_statuses)))
            .values(status=to_status)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def mark_paid(self, submission_id: str) -> bool:
        return self.transition_status(submission_id, "paid", from_statuses=PAYABLE_STATUSES)

    def set_subscription_status(
        self,
        submission_id: str,
        subscription_status: str,
        *,
        unless: Iterable[str] = (),
    ) -> bool:
        conditions = [Submission.id == submission_id]
        guarded = tuple(unless)
        if guarded:
            conditions.append(
                or_(Submission.subscription_status.is_(None), Submission.subscription_status.not_in(guarded))
            )
        result = self.db.execute(
            update(Submission)
            .where(*conditions)
            .values(subscription_status=subscription_status)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def fill_missing_ids(self, submission_id: str, **provider_ids: str | None) -> list[str]:
        """Stores correlation ids the submission does not have yet; never overwrites."""
        filled = []
        for key, value in provider_ids.items():
            if not value:
                continue
            column = getattr(Submission, _ID_FIELDS[key])
            result = self.db.execute(
                update(Submission)
                .where(Submission.id == submission_id, column.is_(None))
                .values({_ID_FIELDS[key]: value})
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                filled.append(key)
        return filled

    def ensure_payment_details(self, submission_id: str) -> None:
        """Creates the payment row when absent and commits it.

        Runs before any other write in the unit of work: a concurrent insert
        is resolved by rolling back, which would discard pending changes.
        """
        if self.get_payment_details(submission_id):
            return
        self.db.add(PaymentDetails(id=str(uuid.uuid4()), submission_id=submission_id))
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()

    def update_payment_details(
        self,
        submission_id: str,
        *,
        unless_status: str | None = None,
        **values: Any,
    ) -> bool:
        conditions = [PaymentDetails.submission_id == submission_id]
        if unless_status:
            conditions.append(PaymentDetails.status != unless_status)
        result = self.db.execute(
            update(PaymentDetails)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def set_payment_details_if_null(self, submission_id: str, column: str, value: Any) -> bool:
        attribute = getattr(PaymentDetails, column)
        result = self.db.execute(
            update(PaymentDetails)
            .where(PaymentDetails.submission_id == submission_id, attribute.is_(None))
            .values({column: value})
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0
