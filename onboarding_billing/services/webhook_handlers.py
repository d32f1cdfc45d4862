import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.orm import Session, sessionmaker

from onboarding_billing.core.background import BackgroundTaskRunner
from onboarding_billing.core.config import Settings, settings
from onboarding_billing.core.errors import ProcessingError
from onboarding_billing.core.observability import log_event
from onboarding_billing.core.retry import call_with_retry
from onboarding_billing.models.submission import PAYABLE_STATUSES, Submission
from onboarding_billing.services import webhook_ledger
from onboarding_billing.services.notification_service import NotificationEvent, Notifier, send_notification
from onboarding_billing.services.payment_provider import PaymentProvider
from onboarding_billing.services.submission_repository import SubmissionRepository
from onboarding_billing.services.webhook_events import (
    ChargeRefunded,
    InvoicePaid,
    PaymentFailed,
    PaymentIntentSucceeded,
    ProviderEvent,
    ScheduleEnded,
    SetupIntentSucceeded,
    SubscriptionChanged,
    UnhandledEvent,
)

logger = logging.getLogger("onboarding_billing.webhooks")

NOT_CANCELLED = (*PAYABLE_STATUSES, "paid", "completed")
TERMINAL_SUBSCRIPTION_STATUSES = ("canceled", "ended", "released")


@dataclass(frozen=True)
class HandlerResult:
    success: bool
    detail: str | None = None
    error: str | None = None

    @classmethod
    def ok(cls, detail: str | None = None) -> "HandlerResult":
        return cls(success=True, detail=detail)

    @classmethod
    def failed(cls, error: str) -> "HandlerResult":
        return cls(success=False, error=error)


class WebhookDispatcher:
    """Applies typed provider events to submissions.

    Every handler writes absolute values through conditional updates, so a
    redelivered or out-of-order event cannot move a submission backwards.
    """

    def __init__(
        self,
        db: Session,
        provider: PaymentProvider,
        *,
        runner: BackgroundTaskRunner,
        notifier: Notifier,
        config: Settings = settings,
    ):
        self.db = db
        self.provider = provider
        self.runner = runner
        self.notifier = notifier
        self.config = config
        self.repository = SubmissionRepository(db)
        self._handlers: dict[type[ProviderEvent], Callable[[Any], HandlerResult]] = {
            InvoicePaid: self._handle_payment_succeeded,
            PaymentIntentSucceeded: self._handle_payment_succeeded,
            SetupIntentSucceeded: self._handle_setup_intent_succeeded,
            SubscriptionChanged: self._handle_subscription_changed,
            ScheduleEnded: self._handle_schedule_ended,
            ChargeRefunded: self._handle_charge_refunded,
            PaymentFailed: self._handle_payment_failed,
            UnhandledEvent: self._handle_unhandled,
        }

    def dispatch(self, event: ProviderEvent) -> HandlerResult:
        handler = self._handlers.get(type(event), self._handle_unhandled)
        try:
            return handler(event)
        except Exception as exc:
            self.db.rollback()
            log_event(
                logger,
                logging.ERROR,
                "webhook_handler_failed",
                event_id=event.event_id,
                event_type=event.event_type,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return HandlerResult.failed(f"{type(exc).__name__}: {exc}")

    def _find_submission(self, event: ProviderEvent) -> Submission | None:
        submission = self.repository.find_for_event(**event.lookup_keys())
        if submission is None:
            log_event(
                logger,
                logging.WARNING,
                "webhook_submission_not_found",
                event_id=event.event_id,
                event_type=event.event_type,
                lookup=event.lookup_keys(),
            )
        return submission

    def _notify(self, notification: NotificationEvent, event: ProviderEvent, submission_id: str, **fields: Any) -> None:
        send_notification(
            self.runner,
            self.notifier,
            notification,
            {"submission_id": submission_id, "event_id": event.event_id, "event_type": event.event_type, **fields},
        )

    def _handle_payment_succeeded(self, event: InvoicePaid | PaymentIntentSucceeded) -> HandlerResult:
        submission = self._find_submission(event)
        if submission is None:
            return HandlerResult.ok("submission_not_found")
        submission_id = submission.id
        self.repository.ensure_payment_details(submission_id)

        paid_at = getattr(event, "paid_at", None) or event.created or datetime.now(timezone.utc)
        first_completion = self.repository.mark_payment_completed(submission_id, paid_at)
        self.repository.mark_paid(submission_id)
        self.repository.fill_missing_ids(
            submission_id,
            customer_id=event.customer_id,
            subscription_id=event.subscription_id,
            invoice_id=event.invoice_id,
            payment_id=event.payment_id,
        )

        amount = event.amount_paid if isinstance(event, InvoicePaid) else event.amount_received
        values: dict[str, Any] = {"status": "succeeded", "failure_reason": None}
        if amount is not None:
            values["amount"] = amount
        if event.currency:
            values["currency"] = event.currency.upper()
        if event.payment_id:
            values["stripe_payment_id"] = event.payment_id
        if event.invoice_id:
            values["stripe_invoice_id"] = event.invoice_id
        if isinstance(event, PaymentIntentSucceeded) and event.payment_method_id:
            values["payment_method"] = event.payment_method_id
        if first_completion:
            details = self.repository.get_payment_details(submission_id)
            values["metadata_json"] = {
                **((details.metadata_json if details else None) or {}),
                "paid_event_id": event.event_id,
                "paid_event_type": event.event_type,
            }
        self.repository.update_payment_details(submission_id, **values)
        self.repository.set_payment_details_if_null(submission_id, "completed_at", paid_at)
        self.db.commit()

        if first_completion:
            log_event(
                logger,
                logging.INFO,
                "payment_completed",
                submission_id=submission_id,
                event_id=event.event_id,
                paid_at=paid_at,
            )
            self._notify("payment_succeeded", event, submission_id, amount=amount, paid_at=paid_at)
            return HandlerResult.ok("payment_completed")
        return HandlerResult.ok("payment_already_recorded")

    def _handle_setup_intent_succeeded(self, event: SetupIntentSucceeded) -> HandlerResult:
        if not event.payment_method_id:
            raise ProcessingError(f"setup intent {event.payment_id} has no payment method")
        submission = self._find_submission(event)
        if submission is None:
            return HandlerResult.ok("submission_not_found")
        submission_id = submission.id
        customer_id = event.customer_id or submission.stripe_customer_id
        subscription_id = submission.stripe_subscription_id

        self.repository.ensure_payment_details(submission_id)
        self.repository.update_payment_details(submission_id, payment_method=event.payment_method_id)
        self.db.commit()

        call_with_retry(
            self.provider.set_default_payment_method,
            customer_id=customer_id,
            subscription_id=subscription_id,
            payment_method_id=event.payment_method_id,
        )
        return HandlerResult.ok("payment_method_saved")

    def _is_superseded(self, submission: Submission, event: ProviderEvent) -> bool:
        # A re-checkout cancels the previous schedule; its events must not touch the live one.
        if event.schedule_id and submission.stripe_subscription_schedule_id:
            return event.schedule_id != submission.stripe_subscription_schedule_id
        if event.subscription_id and submission.stripe_subscription_id:
            return event.subscription_id != submission.stripe_subscription_id
        return False

    def _handle_subscription_changed(self, event: SubscriptionChanged) -> HandlerResult:
        submission = self._find_submission(event)
        if submission is None:
            return HandlerResult.ok("submission_not_found")
        if self._is_superseded(submission, event):
            return HandlerResult.ok("superseded_subscription")
        submission_id = submission.id

        if event.action == "deleted":
            self.repository.set_subscription_status(submission_id, "canceled")
            cancelled = self.repository.transition_status(submission_id, "cancelled", from_statuses=NOT_CANCELLED)
            self.db.commit()
            if cancelled:
                self._notify("subscription_cancelled", event, submission_id, subscription_id=event.subscription_id)
                return HandlerResult.ok("subscription_cancelled")
            return HandlerResult.ok("already_cancelled")

        if event.status:
            unless = () if event.status == "canceled" else TERMINAL_SUBSCRIPTION_STATUSES
            self.repository.set_subscription_status(submission_id, event.status, unless=unless)
        self.repository.fill_missing_ids(
            submission_id,
            customer_id=event.customer_id,
            subscription_id=event.subscription_id,
            schedule_id=event.schedule_id,
        )
        self.db.commit()
        return HandlerResult.ok(f"subscription_{event.action}")

    def _handle_schedule_ended(self, event: ScheduleEnded) -> HandlerResult:
        submission = self._find_submission(event)
        if submission is None:
            return HandlerResult.ok("submission_not_found")
        if self._is_superseded(submission, event):
            return HandlerResult.ok("superseded_schedule")
        submission_id = submission.id

        if event.action == "canceled":
            self.repository.set_subscription_status(submission_id, "canceled")
            self.repository.transition_status(submission_id, "cancelled", from_statuses=NOT_CANCELLED)
            self.db.commit()
            return HandlerResult.ok("schedule_canceled")

        end_behavior = event.end_behavior or self.config.schedule_end_behavior
        if end_behavior == "release":
            # The subscription outlives the commitment and keeps billing month to month.
            self.repository.set_subscription_status(submission_id, "released", unless=("canceled",))
            self.repository.transition_status(submission_id, "completed", from_statuses=("paid",))
        else:
            self.repository.set_subscription_status(submission_id, "ended", unless=("canceled",))
            self.repository.transition_status(submission_id, "completed", from_statuses=("paid", *PAYABLE_STATUSES))
        self.db.commit()
        return HandlerResult.ok(f"schedule_completed_{end_behavior}")

    def _handle_charge_refunded(self, event: ChargeRefunded) -> HandlerResult:
        submission = self._find_submission(event)
        if submission is None:
            return HandlerResult.ok("submission_not_found")
        submission_id = submission.id
        self.repository.ensure_payment_details(submission_id)

        refunded_at = event.created or datetime.now(timezone.utc)
        first_refund = self.repository.set_payment_details_if_null(submission_id, "refunded_at", refunded_at)
        if event.full_refund:
            self.repository.transition_status(submission_id, "cancelled", from_statuses=NOT_CANCELLED)
        self.db.commit()

        if first_refund:
            self._notify(
                "charge_refunded",
                event,
                submission_id,
                charge_id=event.charge_id,
                amount_refunded=event.amount_refunded,
                full_refund=event.full_refund,
            )
        return HandlerResult.ok("full_refund" if event.full_refund else "partial_refund")

    def _handle_payment_failed(self, event: PaymentFailed) -> HandlerResult:
        submission = self._find_submission(event)
        if submission is None:
            return HandlerResult.ok("submission_not_found")
        submission_id = submission.id
        self.repository.ensure_payment_details(submission_id)

        values: dict[str, Any] = {"status": "failed", "failure_reason": (event.failure_message or "")[:500]}
        if event.payment_id:
            values["stripe_payment_id"] = event.payment_id
        recorded = self.repository.update_payment_details(submission_id, unless_status="succeeded", **values)
        self.db.commit()

        if not recorded:
            return HandlerResult.ok("payment_already_succeeded")
        self._notify(
            "payment_failed",
            event,
            submission_id,
            failure_code=event.failure_code,
            failure_message=event.failure_message,
        )
        return HandlerResult.ok("payment_failed_recorded")

    def _handle_unhandled(self, event: ProviderEvent) -> HandlerResult:
        log_event(
            logger,
            logging.INFO,
            "webhook_event_ignored",
            event_id=event.event_id,
            event_type=event.event_type,
        )
        return HandlerResult.ok("ignored")


def process_event(
    event: ProviderEvent,
    *,
    session_factory: sessionmaker,
    provider: PaymentProvider,
    runner: BackgroundTaskRunner,
    notifier: Notifier,
    config: Settings = settings,
) -> HandlerResult:
    """Applies one ledgered event on its own session and settles its ledger row."""
    db = session_factory()
    try:
        dispatcher = WebhookDispatcher(db, provider, runner=runner, notifier=notifier, config=config)
        result = dispatcher.dispatch(event)
        if result.success:
            webhook_ledger.mark_completed(db, event.event_id)
        else:
            webhook_ledger.mark_failed(db, event.event_id, result.error or "Handler failed")
        log_event(
            logger,
            logging.INFO if result.success else logging.ERROR,
            "webhook_event_processed",
            event_id=event.event_id,
            event_type=event.event_type,
            success=result.success,
            detail=result.detail,
            error=result.error,
        )
        return result
    finally:
        db.close()
