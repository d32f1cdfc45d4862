from uuid import UUID

from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from onboarding_billing.core.api_docs import error_responses
from onboarding_billing.core.deps import get_checkout_service, get_db
from onboarding_billing.core.errors import CheckoutTokenError, SubmissionNotFound
from onboarding_billing.core.security import TokenValidationError, create_checkout_token, verify_checkout_token
from onboarding_billing.models.submission import Submission
from onboarding_billing.schemas.checkout import (
    CheckoutDataOut,
    CheckoutIn,
    CheckoutOut,
    CheckoutTokenIn,
    CheckoutTokenOut,
    PaymentStatusOut,
    PricingLineItemOut,
    PricingSummaryOut,
    StripeIdsOut,
    TaxOut,
)
from onboarding_billing.services.checkout_service import CheckoutRequest, CheckoutResult, CheckoutService
from onboarding_billing.services.submission_repository import SubmissionRepository

router = APIRouter(prefix="/checkout", tags=["checkout"])


def _submission_or_400(db: Session, submission_id: UUID | str, session_id: UUID | str | None = None) -> Submission:
    submission = SubmissionRepository(db).get(str(submission_id))
    if submission is None:
        raise SubmissionNotFound()
    if session_id and submission.session_id and str(session_id) != submission.session_id:
        raise SubmissionNotFound()
    return submission


def _require_checkout_token(db: Session, token: str | None, submission_id: UUID | str) -> None:
    submission = _submission_or_400(db, submission_id)
    try:
        verify_checkout_token(token, submission.id, submission.session_id)
    except TokenValidationError as exc:
        raise CheckoutTokenError(str(exc)) from exc


def _checkout_out(result: CheckoutResult) -> CheckoutOut:
    summary = result.summary
    tax = None
    if result.tax_amount is not None and result.tax_currency:
        tax = TaxOut(amount=result.tax_amount, currency=result.tax_currency)
    return CheckoutOut(
        success=True,
        data=CheckoutDataOut(
            payment_required=result.payment_required,
            client_secret=result.client_secret,
            submission_id=result.submission_id,
            stripe_ids=StripeIdsOut(
                customer_id=result.customer_id,
                subscription_id=result.subscription_id,
                subscription_schedule_id=result.subscription_schedule_id,
                payment_id=result.payment_intent_id,
                invoice_id=result.invoice_id,
            ),
            summary=PricingSummaryOut(
                base_amount=summary.base_amount,
                addon_amounts=summary.addon_amounts,
                subtotal=summary.subtotal,
                discount_amount=summary.discount_amount,
                total=summary.total,
                recurring_amount=summary.recurring_amount,
                recurring_discount=summary.recurring_discount,
                currency=summary.currency,
                discount_code=summary.discount_code,
                line_items=[
                    PricingLineItemOut(
                        id=item.id,
                        description=item.description,
                        amount=item.amount,
                        original_amount=item.original_amount,
                        quantity=item.quantity,
                        discount_amount=item.discount_amount,
                        is_recurring=item.is_recurring,
                    )
                    for item in summary.line_items
                ],
            ),
            tax=tax,
            reused=result.reused,
        ),
    )


@router.post(
    "/token",
    response_model=CheckoutTokenOut,
    summary="Issue a checkout token for a submission",
    responses=error_responses(400, 500),
)
def issue_checkout_token(payload: CheckoutTokenIn, db: Session = Depends(get_db)):
    submission = _submission_or_400(db, payload.submission_id, payload.session_id)
    issued = create_checkout_token(submission.id, submission.session_id)
    return CheckoutTokenOut(token=issued.token, expires_at=issued.expires_at)


@router.post(
    "",
    response_model=CheckoutOut,
    summary="Create or reuse the checkout for a submission",
    responses=error_responses(400, 403, 409, 429, 500),
)
def create_checkout(
    payload: CheckoutIn,
    x_csrf_token: str | None = Header(default=None, alias="X-CSRF-Token"),
    db: Session = Depends(get_db),
    service: CheckoutService = Depends(get_checkout_service),
):
    _require_checkout_token(db, x_csrf_token, payload.submission_id)
    result = service.create_checkout_session(
        CheckoutRequest(
            submission_id=str(payload.submission_id),
            session_id=str(payload.session_id) if payload.session_id else None,
            additional_languages=payload.additional_languages,
            discount_code=payload.discount_code,
        )
    )
    return _checkout_out(result)


@router.get(
    "/{submission_id}/status",
    response_model=PaymentStatusOut,
    summary="Poll the payment status of a submission",
    responses=error_responses(400, 403, 500),
)
def get_checkout_status(
    submission_id: UUID,
    x_csrf_token: str | None = Header(default=None, alias="X-CSRF-Token"),
    db: Session = Depends(get_db),
    service: CheckoutService = Depends(get_checkout_service),
):
    _require_checkout_token(db, x_csrf_token, submission_id)
    status = service.get_payment_status(str(submission_id))
    return PaymentStatusOut(
        submission_id=status.submission_id,
        status=status.status,
        paid=status.paid,
        payment_completed_at=status.payment_completed_at,
        payment_status=status.payment_status,
        subscription_status=status.subscription_status,
    )
