import hashlib
import json
from contextlib import contextmanager
from typing import Any, Iterator

import stripe

from onboarding_billing.core.errors import ProviderRequestError, ProviderTransientError
from onboarding_billing.services.payment_provider import (
    InvoiceItemRequest,
    InvoiceState,
    ProviderCustomer,
    ScheduleRequest,
    ScheduleResult,
)

SIGNUP_SOURCE = "web_onboarding"


def build_stripe_client(api_key: str, *, timeout_seconds: float) -> stripe.StripeClient:
    # Retries are owned by core.retry, so the SDK must not retry on its own.
    return stripe.StripeClient(
        api_key,
        http_client=stripe.RequestsClient(timeout=timeout_seconds),
        max_network_retries=0,
    )


def _field(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _object_id(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return _field(value, "id")


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
        raise ProviderTransientError(f"{operation}: {exc.user_message or exc}", provider_code=exc.code) from exc
    except stripe.APIError as exc:
        raise ProviderTransientError(f"{operation}: {exc.user_message or exc}", provider_code=exc.code) from exc
    except stripe.StripeError as exc:
        raise ProviderRequestError(f"{operation}: {exc.user_message or exc}", provider_code=exc.code) from exc


class StripePaymentProvider:
    name = "stripe"

    def __init__(self, client: stripe.StripeClient, *, base_price_id: str | None):
        self._client = client
        self._base_price_id = base_price_id

    def find_or_create_customer(self, *, email: str, name: str, metadata: dict[str, str]) -> ProviderCustomer:
        merged = {**metadata, "signup_source": SIGNUP_SOURCE}
        with _translate_errors("customers.list"):
            existing = self._client.v1.customers.list(params={"email": email, "limit": 1})
        if existing.data:
            customer = existing.data[0]
            with _translate_errors("customers.update"):
                self._client.v1.customers.update(
                    customer.id,
                    params={"metadata": {**(_field(customer, "metadata") or {}), **merged}},
                )
            return ProviderCustomer(id=customer.id, email=email, created=False)

        # Keyed by email so a retried create never yields a second customer. The
        # provider rejects a reused key whose parameters differ, so the key also
        # covers everything sent with the create.
        params = {"email": email.strip().lower(), "name": name, "metadata": merged}
        email_key = hashlib.sha256(json.dumps(params, sort_keys=True).encode("utf-8")).hexdigest()[:32]
        with _translate_errors("customers.create"):
            customer = self._client.v1.customers.create(
                params=params,
                options={"idempotency_key": f"customer-{email_key}"},
            )
        return ProviderCustomer(id=customer.id, email=email, created=True)

    def create_subscription_schedule(self, request: ScheduleRequest) -> ScheduleResult:
        price_id = request.price_id or self._base_price_id
        if not price_id:
            raise ProviderRequestError("STRIPE_BASE_PACKAGE_PRICE_ID is not configured", provider_code="configuration")

        phase: dict[str, Any] = {
            "items": [{"price": price_id, "quantity": 1}],
            "iterations": request.iterations,
            "metadata": request.metadata,
        }
        if request.coupon_id:
            phase["discounts"] = [{"coupon": request.coupon_id}]

        options = {"idempotency_key": request.idempotency_key} if request.idempotency_key else {}
        with _translate_errors("subscription_schedules.create"):
            schedule = self._client.v1.subscription_schedules.create(
                params={
                    "customer": request.customer_id,
                    "start_date": "now",
                    "end_behavior": request.end_behavior,
                    "phases": [phase],
                    "metadata": {**request.metadata, "commitment_months": str(request.iterations)},
                },
                options=options,
            )
        subscription_id = _object_id(_field(schedule, "subscription"))
        if not subscription_id:
            raise ProviderRequestError("Subscription not created by schedule", provider_code="schedule_incomplete")

        with _translate_errors("subscriptions.update"):
            subscription = self._client.v1.subscriptions.update(
                subscription_id,
                params={
                    "metadata": request.metadata,
                    "payment_settings": {"save_default_payment_method": "on_subscription"},
                },
            )
        invoice_id = _object_id(_field(subscription, "latest_invoice"))
        if not invoice_id:
            raise ProviderRequestError("No invoice found for subscription", provider_code="schedule_incomplete")

        return ScheduleResult(schedule_id=schedule.id, subscription_id=subscription_id, invoice_id=invoice_id)

    def add_invoice_item(self, request: InvoiceItemRequest) -> str:
        options = {"idempotency_key": request.idempotency_key} if request.idempotency_key else {}
        with _translate_errors("invoice_items.create"):
            item = self._client.v1.invoice_items.create(
                params={
                    "customer": request.customer_id,
                    "invoice": request.invoice_id,
                    "amount": request.amount,
                    "currency": request.currency,
                    "description": request.description,
                    "metadata": request.metadata,
                },
                options=options,
            )
        return item.id

    def finalize_invoice(self, invoice_id: str, *, metadata: dict[str, str]) -> InvoiceState:
        with _translate_errors("invoices.update"):
            self._client.v1.invoices.update(invoice_id, params={"metadata": metadata})
        with _translate_errors("invoices.finalize_invoice"):
            invoice = self._client.v1.invoices.finalize_invoice(
                invoice_id,
                params={"expand": ["confirmation_secret", "payments"]},
            )
        return self._invoice_state(invoice)

    def retrieve_invoice(self, invoice_id: str) -> InvoiceState:
        with _translate_errors("invoices.retrieve"):
            invoice = self._client.v1.invoices.retrieve(
                invoice_id,
                params={"expand": ["confirmation_secret", "payments"]},
            )
        return self._invoice_state(invoice)

    def tag_payment_intent(self, payment_intent_id: str, *, metadata: dict[str, str]) -> None:
        with _translate_errors("payment_intents.update"):
            self._client.v1.payment_intents.update(payment_intent_id, params={"metadata": metadata})

    def cancel_subscription_schedule(self, schedule_id: str) -> None:
        with _translate_errors("subscription_schedules.cancel"):
            self._client.v1.subscription_schedules.cancel(
                schedule_id,
                params={"invoice_now": False, "prorate": False},
            )

    def set_default_payment_method(
        self,
        *,
        customer_id: str | None,
        subscription_id: str | None,
        payment_method_id: str,
    ) -> None:
        if customer_id:
            with _translate_errors("customers.update"):
                self._client.v1.customers.update(
                    customer_id,
                    params={"invoice_settings": {"default_payment_method": payment_method_id}},
                )
        if subscription_id:
            with _translate_errors("subscriptions.update"):
                self._client.v1.subscriptions.update(
                    subscription_id,
                    params={"default_payment_method": payment_method_id},
                )

    @staticmethod
    def _invoice_state(invoice: Any) -> InvoiceState:
        client_secret = _field(_field(invoice, "confirmation_secret"), "client_secret")

        payment_intent_id = None
        payments = _field(_field(invoice, "payments"), "data") or []
        if payments:
            payment_intent_id = _object_id(_field(_field(payments[0], "payment"), "payment_intent"))
        if not payment_intent_id and client_secret and client_secret.startswith("pi_"):
            # Finalization can return before payments populate; the secret is "<pi id>_secret_<token>".
            payment_intent_id = client_secret.split("_secret_")[0]

        tax_amount = None
        total_taxes = _field(invoice, "total_taxes")
        if total_taxes:
            tax_amount = sum(int(_field(tax, "amount", 0)) for tax in total_taxes)
        elif _field(invoice, "tax") is not None:
            tax_amount = int(_field(invoice, "tax"))

        amount_due = int(_field(invoice, "amount_due") or 0)
        amount_paid = int(_field(invoice, "amount_paid") or 0)
        amount_remaining = _field(invoice, "amount_remaining")
        amount_remaining = max(amount_due - amount_paid, 0) if amount_remaining is None else int(amount_remaining)

        return InvoiceState(
            invoice_id=invoice.id,
            status=str(_field(invoice, "status") or "draft"),
            total=int(_field(invoice, "total") or 0),
            amount_due=amount_due,
            amount_paid=amount_paid,
            amount_remaining=amount_remaining,
            currency=str(_field(invoice, "currency") or "eur"),
            tax_amount=tax_amount,
            client_secret=client_secret,
            payment_intent_id=payment_intent_id,
        )
