import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from onboarding_billing.core.errors import MissingCustomerEmail, ProviderRequestError, ProviderTransientError
from onboarding_billing.models.payment import PaymentDetails
from onboarding_billing.models.submission import Submission
from onboarding_billing.services.checkout_service import (
    checkout_fingerprint,
    resolve_addon_languages,
    resolve_customer_email,
)


def _payment_details(ctx, submission_id):
    with ctx.session_local() as db:
        return db.execute(
            select(PaymentDetails).where(PaymentDetails.submission_id == submission_id)
        ).scalar_one_or_none()


def test_checkout_with_two_languages_requires_payment(test_context):
    ctx = test_context
    submission_id = ctx.add_submission()

    response = ctx.checkout(submission_id, languages=["de", "fr"])

    assert response.status_code == 200, response.text
    assert response.headers.get("X-Request-ID")
    body = response.json()
    assert body["success"] is True
    data = body["data"]
    assert data["paymentRequired"] is True
    assert data["clientSecret"].startswith("pi_stub_")
    assert data["submissionId"] == submission_id
    assert data["reused"] is False
    assert data["summary"]["total"] == 18500
    assert data["summary"]["addonAmounts"] == {"de": 7500, "fr": 7500}
    assert [item["id"] for item in data["summary"]["lineItems"]] == [
        "base_package",
        "language_addon:de",
        "language_addon:fr",
    ]

    ids = data["stripeIds"]
    invoice = ctx.provider.invoices[ids["invoiceId"]]
    assert sum(invoice.lines) == 18500
    assert invoice.status == "open"
    schedule = ctx.provider.schedules[ids["subscriptionScheduleId"]]
    assert schedule.iterations == 12
    assert schedule.end_behavior == "release"
    assert schedule.base_amount == 3500
    assert ctx.provider.payment_intents[ids["paymentId"]]["submission_id"] == submission_id

    submission = ctx.get_submission(submission_id)
    assert submission.stripe_customer_id == ids["customerId"]
    assert submission.stripe_subscription_schedule_id == ids["subscriptionScheduleId"]
    assert submission.stripe_invoice_id == ids["invoiceId"]
    assert submission.stripe_payment_id == ids["paymentId"]
    assert submission.checkout_fingerprint == checkout_fingerprint(["de", "fr"], None)
    assert submission.payment_summary["total"] == 18500
    assert submission.payment_completed_at is None

    details = _payment_details(ctx, submission_id)
    assert details.status == "pending"
    assert details.amount == 18500
    assert details.currency == "EUR"


def test_checkout_with_percentage_discount(test_context):
    ctx = test_context
    submission_id = ctx.add_submission()

    response = ctx.checkout(submission_id, languages=["de", "fr"], discount_code="welcome10")

    assert response.status_code == 200, response.text
    data = response.json()["data"]
    assert data["paymentRequired"] is True
    assert data["summary"]["discountAmount"] == 1850
    assert data["summary"]["total"] == 16650
    assert data["summary"]["discountCode"] == "WELCOME10"
    invoice = ctx.provider.invoices[data["stripeIds"]["invoiceId"]]
    assert sum(invoice.lines) == 16650
    assert -1850 in invoice.lines

    details = _payment_details(ctx, submission_id)
    assert details.discount_code == "WELCOME10"
    assert details.discount_amount == 1850


def test_fully_discounted_checkout_needs_no_payment(test_context):
    ctx = test_context
    submission_id = ctx.add_submission()

    response = ctx.checkout(submission_id, discount_code="FREEFIRST")

    assert response.status_code == 200, response.text
    data = response.json()["data"]
    assert data["summary"]["total"] == 0
    assert data["paymentRequired"] is False
    assert data["clientSecret"] is None
    assert ctx.provider.invoices[data["stripeIds"]["invoiceId"]].status == "paid"


def test_recurring_discount_attaches_coupon_to_schedule(test_context):
    ctx = test_context
    submission_id = ctx.add_submission()

    response = ctx.checkout(submission_id, languages=["de"], discount_code="LOYAL20")

    assert response.status_code == 200, response.text
    data = response.json()["data"]
    assert data["summary"]["recurringDiscount"] == 700
    assert data["summary"]["total"] == 8800
    schedule = ctx.provider.schedules[data["stripeIds"]["subscriptionScheduleId"]]
    assert schedule.coupon_id == "coupon_loyal20"
    assert schedule.recurring_discount == 700
    assert data["summary"]["recurringAmount"] == schedule.base_amount - schedule.recurring_discount
    assert sum(ctx.provider.invoices[data["stripeIds"]["invoiceId"]].lines) == 8800

    metadata = _payment_details(ctx, submission_id).metadata_json
    assert metadata["checkout_ref"].startswith("chk_")
    assert metadata["additional_languages"] == ["de"]
    assert metadata["discount_code"] == "LOYAL20"
    assert metadata["coupon_id"] == "coupon_loyal20"
    assert metadata["provider"] == "stub"


def test_repeated_checkout_with_same_inputs_reuses_open_invoice(test_context):
    ctx = test_context
    submission_id = ctx.add_submission()

    first = ctx.checkout(submission_id, languages=["de"]).json()["data"]
    second = ctx.checkout(submission_id, languages=["de"]).json()["data"]

    assert second["reused"] is True
    assert second["clientSecret"] == first["clientSecret"]
    assert second["stripeIds"] == first["stripeIds"]
    assert ctx.provider.call_count("create_subscription_schedule") == 1
    assert ctx.provider.call_count("find_or_create_customer") == 1


def test_changed_inputs_cancel_previous_schedule(test_context):
    ctx = test_context
    submission_id = ctx.add_submission()

    first = ctx.checkout(submission_id, languages=["de"]).json()["data"]
    second = ctx.checkout(submission_id, languages=["de", "it"]).json()["data"]

    assert second["reused"] is False
    assert second["stripeIds"]["subscriptionScheduleId"] != first["stripeIds"]["subscriptionScheduleId"]
    assert second["stripeIds"]["customerId"] == first["stripeIds"]["customerId"]
    assert first["stripeIds"]["subscriptionScheduleId"] in ctx.provider.cancelled_schedules
    assert ctx.provider.invoices[first["stripeIds"]["invoiceId"]].status == "void"
    assert second["summary"]["total"] == 18500


def test_paid_invoice_is_never_cancelled_or_rebilled(test_context):
    ctx = test_context
    submission_id = ctx.add_submission()
    first = ctx.checkout(submission_id, languages=["fr"]).json()["data"]
    invoice_id = first["stripeIds"]["invoiceId"]
    # Card confirmed in the browser; invoice.paid has not been delivered yet.
    ctx.provider.mark_invoice_paid(invoice_id)

    same_inputs = ctx.checkout(submission_id, languages=["fr"])
    changed_inputs = ctx.checkout(submission_id, languages=["fr", "de"])

    for response in (same_inputs, changed_inputs):
        assert response.status_code == 409, response.text
        assert response.json()["error"]["code"] == "PAYMENT_ALREADY_COMPLETED"
    assert ctx.provider.cancelled_schedules == set()
    assert ctx.provider.call_count("cancel_subscription_schedule") == 0
    assert ctx.provider.call_count("create_subscription_schedule") == 1
    assert ctx.provider.invoices[invoice_id].status == "paid"
    submission = ctx.get_submission(submission_id)
    assert submission.stripe_subscription_schedule_id == first["stripeIds"]["subscriptionScheduleId"]
    assert submission.checkout_started_at is None

    paid = ctx.provider.retrieve_invoice(invoice_id)
    assert paid.amount_due == 11000
    assert paid.amount_remaining == 0
    assert paid.paid_by_customer is True


def test_checkout_already_being_built_is_rejected(test_context):
    ctx = test_context
    submission_id = ctx.add_submission(checkout_started_at=datetime.now(timezone.utc))

    response = ctx.checkout(submission_id, languages=["de"])

    assert response.status_code == 409, response.text
    assert response.json()["error"]["code"] == "CHECKOUT_IN_PROGRESS"
    assert response.headers["Retry-After"] == "5"
    assert ctx.provider.calls == []
    assert ctx.get_submission(submission_id).checkout_started_at is not None


def test_stale_checkout_claim_is_taken_over(test_context):
    ctx = test_context
    submission_id = ctx.add_submission(checkout_started_at=datetime.now(timezone.utc) - timedelta(hours=1))

    response = ctx.checkout(submission_id, languages=["de"])

    assert response.status_code == 200, response.text
    assert ctx.get_submission(submission_id).checkout_started_at is None


def test_checkout_claim_released_after_provider_failure(test_context):
    ctx = test_context
    submission_id = ctx.add_submission()
    ctx.provider.fail_next("find_or_create_customer", ProviderRequestError("email invalid"))

    failed = ctx.checkout(submission_id, languages=["de"])
    assert failed.status_code == 500
    assert ctx.get_submission(submission_id).checkout_started_at is None

    assert ctx.checkout(submission_id, languages=["de"]).status_code == 200


def test_missing_schedule_at_provider_is_tolerated_on_rebuild(test_context):
    ctx = test_context
    submission_id = ctx.add_submission(
        stripe_subscription_schedule_id="sub_sched_gone",
        stripe_invoice_id="in_gone",
        checkout_fingerprint="stale",
    )

    response = ctx.checkout(submission_id, languages=["de"])

    assert response.status_code == 200, response.text
    assert response.json()["data"]["stripeIds"]["subscriptionScheduleId"] != "sub_sched_gone"


def test_stored_languages_win_over_request(test_context):
    ctx = test_context
    submission_id = ctx.add_submission(
        form_data={"step3": {"businessEmail": "owner@example.com"}, "step13": {"additionalLanguages": ["it"]}}
    )

    response = ctx.checkout(submission_id, languages=["de", "fr"])

    assert response.status_code == 200, response.text
    assert response.json()["data"]["summary"]["addonAmounts"] == {"it": 7500}


def test_already_paid_submission_is_rejected(test_context):
    ctx = test_context
    submission_id = ctx.add_submission(status="paid", payment_completed_at=datetime.now(timezone.utc))

    response = ctx.checkout(submission_id, languages=["de"])

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "PAYMENT_ALREADY_COMPLETED"
    assert ctx.provider.calls == []


def test_unknown_submission_is_rejected(test_context):
    ctx = test_context

    token_response = ctx.client.post("/checkout/token", json={"submissionId": str(uuid.uuid4())})
    checkout_response = ctx.client.post(
        "/checkout",
        json={"submissionId": str(uuid.uuid4())},
        headers={"X-CSRF-Token": "whatever"},
    )

    assert token_response.status_code == 400
    assert token_response.json()["error"]["code"] == "INVALID_SUBMISSION_ID"
    assert checkout_response.status_code == 400
    assert checkout_response.json()["error"]["code"] == "INVALID_SUBMISSION_ID"


def test_session_mismatch_is_rejected(test_context):
    ctx = test_context
    submission_id = ctx.add_submission()

    response = ctx.client.post(
        "/checkout/token",
        json={"submissionId": submission_id, "sessionId": str(uuid.uuid4())},
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_SUBMISSION_ID"


def test_unknown_discount_code_has_no_provider_side_effects(test_context):
    ctx = test_context
    submission_id = ctx.add_submission()

    response = ctx.checkout(submission_id, languages=["de"], discount_code="NOPE")

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "INVALID_DISCOUNT_CODE"
    assert "NOPE" in error["message"]
    assert ctx.provider.calls == []
    assert ctx.provider.customers == {}


def test_expired_discount_code_is_rejected(test_context):
    ctx = test_context
    submission_id = ctx.add_submission()

    response = ctx.checkout(submission_id, discount_code="EXPIRED5")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_DISCOUNT_CODE"


def test_invalid_language_is_rejected(test_context):
    ctx = test_context
    submission_id = ctx.add_submission()

    response = ctx.checkout(submission_id, languages=["de", "xx"])

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "INVALID_LANGUAGE_CODE"
    assert "xx" in error["message"]
    assert ctx.provider.calls == []


def test_missing_customer_email_is_rejected(test_context):
    ctx = test_context
    submission_id = ctx.add_submission(email=None, form_data={"businessName": "No Mail Ltd"})

    response = ctx.checkout(submission_id)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "MISSING_CUSTOMER_EMAIL"
    assert ctx.provider.calls == []


def test_rate_limit_blocks_sixth_attempt_in_window(test_context):
    ctx = test_context
    submission_id = ctx.add_submission()
    token = ctx.checkout_token(submission_id)

    for _ in range(5):
        response = ctx.checkout(submission_id, discount_code="NOPE", token=token)
        assert response.status_code == 400

    blocked = ctx.checkout(submission_id, languages=["de"], token=token)

    assert blocked.status_code == 429
    assert blocked.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
    assert 1 <= int(blocked.headers["Retry-After"]) <= 3601
    assert ctx.provider.calls == []


def test_rate_limit_is_per_submission(test_context):
    ctx = test_context
    limited = ctx.add_submission()
    other = ctx.add_submission(email="other@example.com", form_data={})
    token = ctx.checkout_token(limited)
    for _ in range(6):
        ctx.checkout(limited, discount_code="NOPE", token=token)

    response = ctx.checkout(other, languages=["de"])

    assert response.status_code == 200, response.text


def test_checkout_requires_token(test_context):
    ctx = test_context
    submission_id = ctx.add_submission()
    other_id = ctx.add_submission()

    missing = ctx.client.post("/checkout", json={"submissionId": submission_id})
    foreign = ctx.checkout(submission_id, token=ctx.checkout_token(other_id))
    garbage = ctx.checkout(submission_id, token="not-a-jwt")

    for response in (missing, foreign, garbage):
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "CSRF_VALIDATION_FAILED"
    assert ctx.provider.calls == []


def test_request_validation_errors_render_as_400(test_context):
    ctx = test_context

    response = ctx.client.post("/checkout", json={"additionalLanguages": "de"}, headers={"X-CSRF-Token": "x"})

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert error["path"] == "/checkout"
    assert error["details"]


def test_transient_provider_failure_is_retried(test_context):
    ctx = test_context
    submission_id = ctx.add_submission()
    ctx.provider.fail_next("create_subscription_schedule", ProviderTransientError("connection reset"))

    response = ctx.checkout(submission_id, languages=["de"])

    assert response.status_code == 200, response.text
    assert ctx.provider.call_count("create_subscription_schedule") == 2


def test_exhausted_retries_surface_generic_upstream_error(test_context):
    ctx = test_context
    submission_id = ctx.add_submission()
    ctx.provider.fail_next("find_or_create_customer", ProviderTransientError("timeout"), times=3)

    response = ctx.checkout(submission_id, languages=["de"])

    assert response.status_code == 500
    error = response.json()["error"]
    assert error["code"] == "STRIPE_API_ERROR"
    assert error["message"] == "Failed to create checkout session. Please try again."
    assert "timeout" not in error["message"]
    assert error["request_id"]
    assert ctx.provider.call_count("find_or_create_customer") == 3


def test_terminal_provider_failure_is_not_retried(test_context):
    ctx = test_context
    submission_id = ctx.add_submission()
    ctx.provider.fail_next("finalize_invoice", ProviderRequestError("invoice locked", provider_code="invoice_locked"))

    response = ctx.checkout(submission_id, languages=["de"])

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "STRIPE_API_ERROR"
    assert ctx.provider.call_count("finalize_invoice") == 1

    # The half-built schedule was recorded, so the next attempt cancels it.
    retry = ctx.checkout(submission_id, languages=["de"])
    assert retry.status_code == 200, retry.text
    assert len(ctx.provider.cancelled_schedules) == 1


def test_payment_status_polling(test_context):
    ctx = test_context
    submission_id = ctx.add_submission()
    token = ctx.checkout_token(submission_id)
    ctx.checkout(submission_id, languages=["de"], token=token)

    response = ctx.client.get(f"/checkout/{submission_id}/status", headers={"X-CSRF-Token": token})

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["submissionId"] == submission_id
    assert body["status"] == "submitted"
    assert body["paid"] is False
    assert body["paymentStatus"] == "pending"


def test_customer_email_resolution_order():
    submission = Submission(
        id="s-1",
        email="column@example.com",
        form_data={"businessEmail": "business@example.com", "step3": {"businessEmail": "step3@example.com"}},
    )
    assert resolve_customer_email(submission) == "business@example.com"

    submission.form_data = {"email": " first@example.com ", "businessEmail": "business@example.com"}
    assert resolve_customer_email(submission) == "first@example.com"

    submission.form_data = {"step3": {"businessEmail": "step3@example.com"}}
    assert resolve_customer_email(submission) == "step3@example.com"

    submission.form_data = {}
    assert resolve_customer_email(submission) == "column@example.com"

    submission.email = None
    try:
        resolve_customer_email(submission)
    except MissingCustomerEmail as exc:
        assert exc.status_code == 400
    else:
        raise AssertionError("expected MissingCustomerEmail")


def test_addon_language_resolution_falls_back_to_request():
    submission = Submission(id="s-2", form_data={"additionalLanguages": []})
    assert resolve_addon_languages(submission, ["DE", "fr", "de"]) == ["de", "fr"]

    submission.form_data = {"additionalLanguages": ["pt"]}
    assert resolve_addon_languages(submission, ["de"]) == ["pt"]
