import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, TypeVar

from sqlalchemy.orm import Session

from onboarding_billing.core.config import Settings, settings
from onboarding_billing.core.errors import (
    CheckoutInProgress,
    MissingCustomerEmail,
    PaymentAlreadyCompleted,
    RateLimitExceeded,
    SubmissionNotFound,
    UpstreamProviderError,
)
from onboarding_billing.core.id_utils import generate_correlation_id
from onboarding_billing.core.observability import log_event
from onboarding_billing.core.rate_limit import FixedWindowRateLimiter
from onboarding_billing.core.retry import call_with_retry
from onboarding_billing.models.submission import Submission
from onboarding_billing.services.payment_provider import (
    InvoiceItemRequest,
    InvoiceState,
    PaymentProvider,
    ScheduleRequest,
)
from onboarding_billing.services.pricing_service import (
    BaseItem,
    DiscountCatalog,
    PricingSummary,
    compute_pricing,
    default_base_item,
    default_discount_catalog,
    normalize_language_codes,
)
from onboarding_billing.services.submission_repository import SubmissionRepository

logger = logging.getLogger("onboarding_billing.checkout")

T = TypeVar("T")

ALREADY_PAID_STATUSES = {"paid", "completed"}


@dataclass(frozen=True)
class CheckoutRequest:
    submission_id: str
    session_id: str | None = None
    additional_languages: list[str] = field(default_factory=list)
    discount_code: str | None = None


@dataclass(frozen=True)
class CheckoutResult:
    submission_id: str
    payment_required: bool
    client_secret: str | None
    customer_id: str | None
    subscription_id: str | None
    subscription_schedule_id: str | None
    invoice_id: str | None
    payment_intent_id: str | None
    summary: PricingSummary
    tax_amount: int | None = None
    tax_currency: str | None = None
    reused: bool = False


@dataclass(frozen=True)
class PaymentStatus:
    submission_id: str
    status: str
    payment_completed_at: datetime | None
    payment_status: str | None
    subscription_status: str | None

    @property
    def paid(self) -> bool:
        return self.payment_completed_at is not None


def checkout_rate_limiter(config: Settings = settings) -> FixedWindowRateLimiter:
    return FixedWindowRateLimiter(
        max_attempts=config.checkout_rate_limit_max_attempts,
        window_seconds=config.checkout_rate_limit_window_seconds,
    )


def checkout_fingerprint(languages: list[str], discount_code: str | None) -> str:
    """Identifies the priced inputs of a checkout, independent of their order."""
    payload = json.dumps(
        {"languages": sorted(languages), "discount_code": (discount_code or "").upper()},
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _form_value(form_data: dict[str, Any], *path: str) -> Any:
    value: Any = form_data
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def resolve_customer_email(submission: Submission) -> str:
    form_data = submission.form_data or {}
    candidates = (
        _form_value(form_data, "email"),
        _form_value(form_data, "businessEmail"),
        _form_value(form_data, "step3", "businessEmail"),
        submission.email,
    )
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    raise MissingCustomerEmail()


def resolve_business_name(submission: Submission, fallback: str) -> str:
    form_data = submission.form_data or {}
    for candidate in (
        _form_value(form_data, "businessName"),
        _form_value(form_data, "step3", "businessName"),
        submission.business_name,
    ):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return fallback


def resolve_addon_languages(submission: Submission, requested: list[str]) -> list[str]:
    """Languages stored with the submission win over whatever the browser sent."""
    form_data = submission.form_data or {}
    stored = _form_value(form_data, "step13", "additionalLanguages") or _form_value(form_data, "additionalLanguages")
    if isinstance(stored, list):
        stored_codes = normalize_language_codes(stored)
        if stored_codes:
            return stored_codes
    return normalize_language_codes(requested or [])


class CheckoutService:
    def __init__(
        self,
        db: Session,
        provider: PaymentProvider,
        *,
        rate_limiter: FixedWindowRateLimiter | None = None,
        config: Settings = settings,
        catalog: DiscountCatalog | None = None,
        base_item: BaseItem | None = None,
    ):
        self.db = db
        self.provider = provider
        self.repository = SubmissionRepository(db)
        self.config = config
        self.rate_limiter = rate_limiter or checkout_rate_limiter(config)
        self.catalog = catalog or default_discount_catalog()
        self.base_item = base_item or default_base_item()

    def create_checkout_session(self, request: CheckoutRequest) -> CheckoutResult:
        submission = self._load_submission(request.submission_id, request.session_id)
        if submission.payment_completed_at is not None or submission.status in ALREADY_PAID_STATUSES:
            raise PaymentAlreadyCompleted()

        retry_after = self.rate_limiter.check_and_consume(self.db, f"checkout:{submission.id}")
        if retry_after:
            log_event(
                logger,
                logging.WARNING,
                "checkout_rate_limited",
                submission_id=submission.id,
                retry_after_seconds=retry_after,
            )
            raise RateLimitExceeded(retry_after)

        languages = resolve_addon_languages(submission, request.additional_languages)
        email = resolve_customer_email(submission)
        summary = compute_pricing(
            self.base_item,
            languages,
            request.discount_code,
            catalog=self.catalog,
            addon_amount=self.config.language_addon_amount,
            currency=self.config.billing_currency,
        )
        fingerprint = checkout_fingerprint(summary.addon_languages, summary.discount_code)

        submission_id = submission.id
        self._claim(submission_id)
        try:
            result = self._checkout_claimed(submission, email, summary, fingerprint)
        except Exception:
            self.db.rollback()
            self._release(submission_id)
            raise
        self._release(submission_id)
        return result

    def _checkout_claimed(
        self,
        submission: Submission,
        email: str,
        summary: PricingSummary,
        fingerprint: str,
    ) -> CheckoutResult:
        # The claim commit reloads the row, so ids written by an earlier holder are visible here.
        if submission.payment_completed_at is not None or submission.status in ALREADY_PAID_STATUSES:
            raise PaymentAlreadyCompleted()

        invoice = self._stored_invoice(submission)
        if invoice is not None and invoice.paid_by_customer:
            log_event(
                logger,
                logging.WARNING,
                "checkout_invoice_already_paid",
                submission_id=submission.id,
                invoice_id=invoice.invoice_id,
                schedule_id=submission.stripe_subscription_schedule_id,
            )
            raise PaymentAlreadyCompleted()

        reused = self._reuse_existing(submission, fingerprint, summary, invoice)
        if reused is not None:
            return reused

        if submission.stripe_subscription_schedule_id:
            self._cancel_previous(submission)

        return self._build_checkout(submission, email, summary, fingerprint)

    def _claim(self, submission_id: str) -> None:
        now = datetime.now(timezone.utc)
        stale_before = now - timedelta(seconds=self.config.checkout_claim_ttl_seconds)
        claimed = self.repository.claim_checkout(submission_id, now, stale_before)
        self.db.commit()
        if not claimed:
            log_event(logger, logging.WARNING, "checkout_in_progress", submission_id=submission_id)
            raise CheckoutInProgress()

    def _release(self, submission_id: str) -> None:
        self.repository.release_checkout(submission_id)
        self.db.commit()

    def get_payment_status(self, submission_id: str) -> PaymentStatus:
        submission = self._load_submission(submission_id, None)
        details = self.repository.get_payment_details(submission.id)
        return PaymentStatus(
            submission_id=submission.id,
            status=submission.status,
            payment_completed_at=submission.payment_completed_at,
            payment_status=details.status if details else None,
            subscription_status=submission.subscription_status,
        )

    def _load_submission(self, submission_id: str, session_id: str | None) -> Submission:
        submission = self.repository.get(str(submission_id))
        if submission is None:
            raise SubmissionNotFound()
        if session_id and submission.session_id and str(session_id) != submission.session_id:
            raise SubmissionNotFound()
        return submission

    def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return call_with_retry(fn, *args, **kwargs)

    def _stored_invoice(self, submission: Submission) -> InvoiceState | None:
        if not submission.stripe_invoice_id:
            return None
        try:
            return self._call(self.provider.retrieve_invoice, submission.stripe_invoice_id)
        except UpstreamProviderError as exc:
            if exc.resource_missing:
                return None
            raise

    def _reuse_existing(
        self,
        submission: Submission,
        fingerprint: str,
        summary: PricingSummary,
        invoice: InvoiceState | None,
    ) -> CheckoutResult | None:
        if invoice is None or not submission.stripe_subscription_schedule_id:
            return None
        if submission.checkout_fingerprint != fingerprint:
            return None
        if not invoice.reusable:
            return None

        log_event(
            logger,
            logging.INFO,
            "checkout_session_reused",
            submission_id=submission.id,
            invoice_id=invoice.invoice_id,
            invoice_status=invoice.status,
        )
        return self._result(
            submission,
            summary,
            invoice,
            customer_id=submission.stripe_customer_id,
            subscription_id=submission.stripe_subscription_id,
            schedule_id=submission.stripe_subscription_schedule_id,
            reused=True,
        )

    def _cancel_previous(self, submission: Submission) -> None:
        schedule_id = submission.stripe_subscription_schedule_id
        try:
            self._call(self.provider.cancel_subscription_schedule, schedule_id)
        except UpstreamProviderError as exc:
            if not exc.resource_missing:
                raise
        log_event(
            logger,
            logging.INFO,
            "checkout_previous_schedule_cancelled",
            submission_id=submission.id,
            schedule_id=schedule_id,
        )
        submission.stripe_subscription_schedule_id = None
        submission.stripe_subscription_id = None
        submission.stripe_invoice_id = None
        submission.stripe_payment_id = None
        submission.checkout_fingerprint = None
        self.db.commit()

    def _build_checkout(
        self,
        submission: Submission,
        email: str,
        summary: PricingSummary,
        fingerprint: str,
    ) -> CheckoutResult:
        checkout_ref = generate_correlation_id("chk")
        metadata = {"submission_id": submission.id, "checkout_ref": checkout_ref}
        if submission.session_id:
            metadata["session_id"] = submission.session_id

        # Customer create parameters must not change between retries of one checkout.
        customer = self._call(
            self.provider.find_or_create_customer,
            email=email,
            name=resolve_business_name(submission, email),
            metadata={key: value for key, value in metadata.items() if key != "checkout_ref"},
        )

        rule = self.catalog.get(summary.discount_code) if summary.discount_code else None
        coupon_id = rule.provider_coupon_id if rule and summary.recurring_discount else None
        recurring_part = summary.recurring_discount if coupon_id else 0

        schedule = self._call(
            self.provider.create_subscription_schedule,
            ScheduleRequest(
                customer_id=customer.id,
                base_amount=summary.base_amount,
                currency=summary.currency,
                iterations=self.config.commitment_months,
                end_behavior=self.config.schedule_end_behavior,
                price_id=self.config.stripe_base_package_price_id,
                coupon_id=coupon_id,
                recurring_discount=recurring_part,
                metadata={
                    **metadata,
                    "additional_languages": ",".join(summary.addon_languages),
                    "discount_code": summary.discount_code or "",
                },
                idempotency_key=f"{checkout_ref}-schedule",
            ),
        )

        # Recorded before the invoice work so a failed attempt is cancelled by the next one.
        submission.stripe_customer_id = customer.id
        submission.stripe_subscription_schedule_id = schedule.schedule_id
        submission.stripe_subscription_id = schedule.subscription_id
        submission.stripe_invoice_id = schedule.invoice_id
        submission.checkout_fingerprint = None
        self.db.commit()

        for item in summary.line_items:
            if item.is_recurring:
                continue
            language_code = item.id.split(":", 1)[1]
            self._call(
                self.provider.add_invoice_item,
                InvoiceItemRequest(
                    customer_id=customer.id,
                    invoice_id=schedule.invoice_id,
                    amount=item.original_amount,
                    currency=summary.currency,
                    description=item.description,
                    metadata={**metadata, "language_code": language_code},
                    idempotency_key=f"{checkout_ref}-addon-{language_code}",
                ),
            )

        one_time_discount = summary.discount_amount - recurring_part
        if one_time_discount > 0:
            self._call(
                self.provider.add_invoice_item,
                InvoiceItemRequest(
                    customer_id=customer.id,
                    invoice_id=schedule.invoice_id,
                    amount=-one_time_discount,
                    currency=summary.currency,
                    description=f"Discount ({summary.discount_code})",
                    metadata={**metadata, "discount_code": summary.discount_code or ""},
                    idempotency_key=f"{checkout_ref}-discount",
                ),
            )

        invoice = self._call(self.provider.finalize_invoice, schedule.invoice_id, metadata=metadata)
        if invoice.payment_intent_id:
            self._call(self.provider.tag_payment_intent, invoice.payment_intent_id, metadata=metadata)

        self._persist(
            submission,
            summary,
            invoice,
            fingerprint,
            customer_id=customer.id,
            schedule=schedule,
            checkout_metadata={
                "checkout_ref": checkout_ref,
                "additional_languages": summary.addon_languages,
                "discount_code": summary.discount_code,
                "coupon_id": coupon_id,
                "provider": self.provider.name,
            },
        )

        log_event(
            logger,
            logging.INFO,
            "checkout_session_created",
            submission_id=submission.id,
            checkout_ref=checkout_ref,
            customer_created=customer.created,
            schedule_id=schedule.schedule_id,
            invoice_id=invoice.invoice_id,
            total=summary.total,
            payment_required=invoice.amount_remaining > 0,
        )
        return self._result(
            submission,
            summary,
            invoice,
            customer_id=customer.id,
            subscription_id=schedule.subscription_id,
            schedule_id=schedule.schedule_id,
            reused=False,
        )

    def _persist(
        self,
        submission,
        summary,
        invoice: InvoiceState,
        fingerprint,
        *,
        customer_id,
        schedule,
        checkout_metadata: dict[str, Any],
    ) -> None:
        self.repository.ensure_payment_details(submission.id)

        tax_currency = invoice.currency.upper() if invoice.tax_amount is not None else None
        submission.stripe_payment_id = invoice.payment_intent_id
        submission.checkout_fingerprint = fingerprint
        submission.payment_summary = summary.as_dict()
        submission.payment_tax_amount = invoice.tax_amount
        submission.payment_tax_currency = tax_currency

        self.repository.update_payment_details(
            submission.id,
            unless_status="succeeded",
            status="pending",
            stripe_customer_id=customer_id,
            stripe_subscription_id=schedule.subscription_id,
            stripe_subscription_schedule_id=schedule.schedule_id,
            stripe_invoice_id=invoice.invoice_id,
            stripe_payment_id=invoice.payment_intent_id,
            amount=summary.total,
            currency=summary.currency.upper(),
            discount_code=summary.discount_code,
            discount_amount=summary.discount_amount,
            failure_reason=None,
            metadata_json=checkout_metadata,
        )
        self.db.commit()

    def _result(
        self,
        submission: Submission,
        summary: PricingSummary,
        invoice: InvoiceState,
        *,
        customer_id: str | None,
        subscription_id: str | None,
        schedule_id: str | None,
        reused: bool,
    ) -> CheckoutResult:
        payment_required = invoice.amount_remaining > 0
        return CheckoutResult(
            submission_id=submission.id,
            payment_required=payment_required,
            client_secret=invoice.client_secret if payment_required else None,
            customer_id=customer_id,
            subscription_id=subscription_id,
            subscription_schedule_id=schedule_id,
            invoice_id=invoice.invoice_id,
            payment_intent_id=invoice.payment_intent_id,
            summary=summary,
            tax_amount=invoice.tax_amount,
            tax_currency=invoice.currency.upper() if invoice.tax_amount is not None else None,
            reused=reused,
        )
