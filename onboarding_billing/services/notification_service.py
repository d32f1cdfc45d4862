import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Literal, Protocol

from onboarding_billing.core.background import BackgroundTaskRunner, RunnerClosedError
from onboarding_billing.core.config import Settings, settings
from onboarding_billing.core.observability import log_event

logger = logging.getLogger("onboarding_billing.notifications")

NotificationEvent = Literal["payment_succeeded", "payment_failed", "charge_refunded", "subscription_cancelled"]
DeliveryStatus = Literal["sent", "not_configured", "failed"]

_SUBJECTS: dict[str, str] = {
    "payment_succeeded": "Payment received for onboarding submission {submission_id}",
    "payment_failed": "Payment failed for onboarding submission {submission_id}",
    "charge_refunded": "Refund issued for onboarding submission {submission_id}",
    "subscription_cancelled": "Subscription cancelled for onboarding submission {submission_id}",
}


@dataclass(frozen=True)
class NotificationDeliveryResult:
    status: DeliveryStatus
    detail: str | None = None


class Notifier(Protocol):
    def notify(self, event: NotificationEvent, payload: dict[str, Any]) -> NotificationDeliveryResult:
        ...


def _build_body(event: str, payload: dict[str, Any]) -> str:
    lines = [f"Event: {event}", ""]
    for key in sorted(payload):
        lines.append(f"{key}: {payload[key]}")
    return "\n".join(lines)


class EmailNotifier:
    """Mails payment lifecycle events to the operations inbox."""

    def __init__(self, config: Settings = settings):
        self.config = config

    def _configured(self) -> bool:
        return bool(self.config.smtp_host and self.config.smtp_sender_email and self.config.admin_notification_email)

    def notify(self, event: NotificationEvent, payload: dict[str, Any]) -> NotificationDeliveryResult:
        if not self._configured():
            return NotificationDeliveryResult(status="not_configured", detail="SMTP not configured")

        config = self.config
        message = EmailMessage()
        message["Subject"] = _SUBJECTS.get(event, "Payment event for {submission_id}").format(
            submission_id=payload.get("submission_id", "unknown")
        )
        message["From"] = config.smtp_sender_email
        message["To"] = config.admin_notification_email
        message.set_content(_build_body(event, payload))

        try:
            if config.smtp_use_ssl:
                with smtplib.SMTP_SSL(config.smtp_host, config.smtp_port, timeout=20) as server:
                    if config.smtp_username:
                        server.login(config.smtp_username, config.smtp_password or "")
                    server.send_message(message)
            else:
                with smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=20) as server:
                    if config.smtp_use_starttls:
                        server.starttls()
                    if config.smtp_username:
                        server.login(config.smtp_username, config.smtp_password or "")
                    server.send_message(message)
        except Exception as exc:  # noqa: BLE001 - expose short status back to caller
            return NotificationDeliveryResult(status="failed", detail=str(exc))

        return NotificationDeliveryResult(status="sent")


def _deliver(notifier: Notifier, event: NotificationEvent, payload: dict[str, Any]) -> NotificationDeliveryResult:
    result = notifier.notify(event, payload)
    log_event(
        logger,
        logging.WARNING if result.status == "failed" else logging.INFO,
        "notification_delivery",
        notification=event,
        submission_id=payload.get("submission_id"),
        status=result.status,
        detail=result.detail,
    )
    return result


def send_notification(
    runner: BackgroundTaskRunner,
    notifier: Notifier,
    event: NotificationEvent,
    payload: dict[str, Any],
) -> None:
    """Fire-and-forget: delivery happens on the runner and never fails the caller."""
    try:
        runner.submit(f"notify:{event}", _deliver, notifier, event, dict(payload))
    except RunnerClosedError:
        log_event(
            logger,
            logging.WARNING,
            "notification_dropped",
            notification=event,
            submission_id=payload.get("submission_id"),
            reason="runner_closed",
        )
