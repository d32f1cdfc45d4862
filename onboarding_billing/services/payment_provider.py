import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Protocol

from onboarding_billing.core.errors import ProviderError, ProviderRequestError


@dataclass(frozen=True)
class ProviderCustomer:
    id: str
    email: str
    created: bool


@dataclass(frozen=True)
class ScheduleRequest:
    customer_id: str
    base_amount: int
    currency: str
    iterations: int
    end_behavior: str
    price_id: str | None = None
    coupon_id: str | None = None
    recurring_discount: int = 0
    metadata: dict[str, str] = field(default_factory=dict)
    idempotency_key: str | None = None


@dataclass(frozen=True)
class ScheduleResult:
    schedule_id: str
    subscription_id: str
    invoice_id: str


@dataclass(frozen=True)
class InvoiceItemRequest:
    customer_id: str
    invoice_id: str
    amount: int
    currency: str
    description: str
    metadata: dict[str, str] = field(default_factory=dict)
    idempotency_key: str | None = None


@dataclass(frozen=True)
class InvoiceState:
    invoice_id: str
    status: str
    total: int
    amount_due: int
    currency: str
    amount_paid: int = 0
    amount_remaining: int = 0
    tax_amount: int | None = None
    client_secret: str | None = None
    payment_intent_id: str | None = None

    @property
    def paid_by_customer(self) -> bool:
        # A paid invoice keeps its amount_due; only amount_remaining drops to zero.
        return self.status == "paid" and self.amount_paid > 0

    @property
    def fully_offset(self) -> bool:
        return self.status == "paid" and self.amount_paid == 0 and self.total == 0

    @property
    def reusable(self) -> bool:
        if self.fully_offset:
            return True
        return self.status == "open" and bool(self.client_secret)


class PaymentProvider(Protocol):
    name: str

    def find_or_create_customer(
        self,
        *,
        email: str,
        name: str,
        metadata: dict[str, str],
    ) -> ProviderCustomer:
        ...

    def create_subscription_schedule(self, request: ScheduleRequest) -> ScheduleResult:
        ...

    def add_invoice_item(self, request: InvoiceItemRequest) -> str:
        ...

    def finalize_invoice(self, invoice_id: str, *, metadata: dict[str, str]) -> InvoiceState:
        ...

    def retrieve_invoice(self, invoice_id: str) -> InvoiceState:
        ...

    def tag_payment_intent(self, payment_intent_id: str, *, metadata: dict[str, str]) -> None:
        ...

    def cancel_subscription_schedule(self, schedule_id: str) -> None:
        ...

    def set_default_payment_method(
        self,
        *,
        customer_id: str | None,
        subscription_id: str | None,
        payment_method_id: str,
    ) -> None:
        ...


@dataclass
class _StubInvoice:
    id: str
    customer_id: str
    currency: str
    lines: list[int]
    status: str = "draft"
    client_secret: str | None = None
    payment_intent_id: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


class StubPaymentProvider:
    """In-process provider used for local development and the test suite.

    It mirrors the provider contract closely enough to exercise every branch
    of the checkout flow: customers are de-duplicated by email, schedules
    open a draft invoice for the first cycle, and zero-amount invoices are
    settled on finalization. ``fail_next`` injects provider failures.
    """

    name = "stub"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = defaultdict(int)
        self.customers: dict[str, ProviderCustomer] = {}
        self.schedules: dict[str, ScheduleRequest] = {}
        self.schedule_invoices: dict[str, str] = {}
        self.cancelled_schedules: set[str] = set()
        self.invoices: dict[str, _StubInvoice] = {}
        self.payment_intents: dict[str, dict[str, str]] = {}
        self.default_payment_methods: dict[str, str] = {}
        self.calls: list[str] = []
        self._failures: dict[str, list[ProviderError]] = defaultdict(list)

    def fail_next(self, operation: str, error: ProviderError, *, times: int = 1) -> None:
        with self._lock:
            self._failures[operation].extend([error] * times)

    def call_count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call == operation)

    def _next_id(self, prefix: str) -> str:
        self._counters[prefix] += 1
        return f"{prefix}_stub_{self._counters[prefix]:06d}"

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _invoice_or_missing(self, invoice_id: str) -> _StubInvoice:
        invoice = self.invoices.get(invoice_id)
        if invoice is None:
            raise ProviderRequestError(f"No such invoice: {invoice_id}", provider_code="resource_missing")
        return invoice

    def find_or_create_customer(self, *, email: str, name: str, metadata: dict[str, str]) -> ProviderCustomer:
        with self._lock:
            self._enter("find_or_create_customer")
            key = email.strip().lower()
            existing = self.customers.get(key)
            if existing:
                return ProviderCustomer(id=existing.id, email=existing.email, created=False)
            customer = ProviderCustomer(id=self._next_id("cus"), email=email, created=True)
            self.customers[key] = customer
            return customer

    def create_subscription_schedule(self, request: ScheduleRequest) -> ScheduleResult:
        with self._lock:
            self._enter("create_subscription_schedule")
            schedule_id = self._next_id("sub_sched")
            subscription_id = self._next_id("sub")
            invoice = _StubInvoice(
                id=self._next_id("in"),
                customer_id=request.customer_id,
                currency=request.currency,
                lines=[request.base_amount - request.recurring_discount],
            )
            self.schedules[schedule_id] = request
            self.schedule_invoices[schedule_id] = invoice.id
            self.invoices[invoice.id] = invoice
            return ScheduleResult(schedule_id=schedule_id, subscription_id=subscription_id, invoice_id=invoice.id)

    def add_invoice_item(self, request: InvoiceItemRequest) -> str:
        with self._lock:
            self._enter("add_invoice_item")
            invoice = self._invoice_or_missing(request.invoice_id)
            if invoice.status != "draft":
                raise ProviderRequestError("Invoice is already finalized", provider_code="invoice_not_editable")
            invoice.lines.append(request.amount)
            return self._next_id("ii")

    def finalize_invoice(self, invoice_id: str, *, metadata: dict[str, str]) -> InvoiceState:
        with self._lock:
            self._enter("finalize_invoice")
            invoice = self._invoice_or_missing(invoice_id)
            invoice.metadata.update(metadata)
            if invoice.status == "draft":
                if self._total(invoice) > 0:
                    invoice.status = "open"
                    invoice.payment_intent_id = self._next_id("pi")
                    invoice.client_secret = f"{invoice.payment_intent_id}_secret_{self._counters['pi']:06d}"
                    self.payment_intents[invoice.payment_intent_id] = {}
                else:
                    invoice.status = "paid"
            return self._state(invoice)

    def retrieve_invoice(self, invoice_id: str) -> InvoiceState:
        with self._lock:
            self._enter("retrieve_invoice")
            return self._state(self._invoice_or_missing(invoice_id))

    def tag_payment_intent(self, payment_intent_id: str, *, metadata: dict[str, str]) -> None:
        with self._lock:
            self._enter("tag_payment_intent")
            self.payment_intents.setdefault(payment_intent_id, {}).update(metadata)

    def cancel_subscription_schedule(self, schedule_id: str) -> None:
        with self._lock:
            self._enter("cancel_subscription_schedule")
            if schedule_id not in self.schedules:
                raise ProviderRequestError(f"No such schedule: {schedule_id}", provider_code="resource_missing")
            self.cancelled_schedules.add(schedule_id)
            invoice = self.invoices.get(self.schedule_invoices.get(schedule_id, ""))
            if invoice and invoice.status in {"draft", "open"}:
                invoice.status = "void"

    def set_default_payment_method(
        self,
        *,
        customer_id: str | None,
        subscription_id: str | None,
        payment_method_id: str,
    ) -> None:
        with self._lock:
            self._enter("set_default_payment_method")
            for key in (customer_id, subscription_id):
                if key:
                    self.default_payment_methods[key] = payment_method_id

    def mark_invoice_paid(self, invoice_id: str) -> None:
        """Settles an invoice the way a confirmed card payment would."""
        with self._lock:
            self._invoice_or_missing(invoice_id).status = "paid"

    @staticmethod
    def _total(invoice: _StubInvoice) -> int:
        return max(sum(invoice.lines), 0)

    def _state(self, invoice: _StubInvoice) -> InvoiceState:
        total = self._total(invoice)
        return InvoiceState(
            invoice_id=invoice.id,
            status=invoice.status,
            total=total,
            amount_due=total,
            amount_paid=total if invoice.status == "paid" else 0,
            amount_remaining=0 if invoice.status in {"paid", "void"} else total,
            currency=invoice.currency,
            tax_amount=None,
            client_secret=invoice.client_secret if invoice.status == "open" else None,
            payment_intent_id=invoice.payment_intent_id,
        )
