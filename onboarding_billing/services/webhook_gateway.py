import logging
from dataclasses import dataclass

import stripe
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from onboarding_billing.core.background import BackgroundTaskRunner, RunnerClosedError
from onboarding_billing.core.config import Settings, settings
from onboarding_billing.core.errors import LedgerWriteError, WebhookPayloadError, WebhookSignatureError
from onboarding_billing.core.observability import log_event
from onboarding_billing.services import webhook_ledger
from onboarding_billing.services.notification_service import Notifier
from onboarding_billing.services.payment_provider import PaymentProvider
from onboarding_billing.services.webhook_events import ProviderEventEnvelope, parse_provider_event
from onboarding_billing.services.webhook_handlers import process_event

logger = logging.getLogger("onboarding_billing.webhooks")

BYPASS_HEADER = "x-mock-webhook"
SIGNATURE_HEADER = "Stripe-Signature"


@dataclass(frozen=True)
class WebhookAck:
    received: bool = True
    duplicate: bool = False
    event_id: str | None = None


class WebhookGateway:
    """Authenticates, ledgers and hands off provider events.

    The provider gets its acknowledgement as soon as the event id is on the
    ledger; applying the event happens on the background runner.
    """

    def __init__(
        self,
        db: Session,
        *,
        session_factory: sessionmaker,
        provider: PaymentProvider,
        runner: BackgroundTaskRunner,
        notifier: Notifier,
        config: Settings = settings,
    ):
        self.db = db
        self.session_factory = session_factory
        self.provider = provider
        self.runner = runner
        self.notifier = notifier
        self.config = config

    def bypass_allowed(self, bypass_header: str | None) -> bool:
        if (bypass_header or "").strip().lower() != "true":
            return False
        # Re-checked per call: settings can be mutated at runtime, validation only runs at load.
        if not self.config.webhook_test_bypass_enabled or self.config.is_production:
            log_event(logger, logging.WARNING, "webhook_bypass_refused", env=self.config.env)
            return False
        return True

    def verify_signature(self, raw_body: bytes, signature_header: str | None) -> None:
        if not signature_header:
            raise WebhookSignatureError("Missing signature")
        try:
            stripe.WebhookSignature.verify_header(
                raw_body.decode("utf-8"),
                signature_header,
                self.config.stripe_webhook_secret,
                tolerance=self.config.webhook_signature_tolerance_seconds,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            raise WebhookSignatureError("Invalid signature") from exc

    def handle_inbound_event(
        self,
        raw_body: bytes,
        signature_header: str | None,
        bypass_header: str | None = None,
    ) -> WebhookAck:
        if self.bypass_allowed(bypass_header):
            log_event(logger, logging.WARNING, "webhook_signature_bypassed")
        else:
            self.verify_signature(raw_body, signature_header)

        try:
            envelope = ProviderEventEnvelope.model_validate_json(raw_body)
        except ValidationError as exc:
            details = []
            for err in exc.errors():
                location = ".".join(str(part) for part in err.get("loc", ()))
                details.append({"field": location or "body", "message": err.get("msg", "Invalid value")})
            raise WebhookPayloadError(details=details) from exc
        event = parse_provider_event(envelope)

        try:
            recorded = webhook_ledger.record_event(
                self.db,
                event_id=event.event_id,
                event_type=event.event_type,
                livemode=event.livemode,
            )
        except SQLAlchemyError as exc:
            self.db.rollback()
            log_event(
                logger,
                logging.ERROR,
                "webhook_ledger_write_failed",
                event_id=event.event_id,
                event_type=event.event_type,
                error=str(exc),
            )
            raise LedgerWriteError() from exc

        if not recorded:
            log_event(
                logger,
                logging.INFO,
                "webhook_duplicate_event",
                event_id=event.event_id,
                event_type=event.event_type,
            )
            return WebhookAck(received=True, duplicate=True, event_id=event.event_id)

        kwargs = {
            "session_factory": self.session_factory,
            "provider": self.provider,
            "runner": self.runner,
            "notifier": self.notifier,
            "config": self.config,
        }
        try:
            self.runner.submit(f"webhook:{event.event_type}", process_event, event, **kwargs)
        except RunnerClosedError:
            # Shutting down: the id is already ledgered, so apply it before answering.
            log_event(logger, logging.WARNING, "webhook_processed_inline", event_id=event.event_id)
            process_event(event, **kwargs)

        log_event(
            logger,
            logging.INFO,
            "webhook_event_accepted",
            event_id=event.event_id,
            event_type=event.event_type,
            livemode=event.livemode,
        )
        return WebhookAck(received=True, duplicate=False, event_id=event.event_id)
