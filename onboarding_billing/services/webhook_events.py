"""Typed views over provider event payloads.

The gateway validates the envelope; ``parse_provider_event`` then turns the
untyped ``data.object`` into one variant per kind of event the dispatcher
knows how to apply. Anything else becomes ``UnhandledEvent``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field


class ProviderEventData(BaseModel):
    object: dict[str, Any]

    model_config = ConfigDict(extra="allow")


class ProviderEventEnvelope(BaseModel):
    id: str = Field(min_length=1, max_length=255)
    type: str = Field(min_length=1, max_length=120)
    created: int | None = None
    livemode: bool = False
    data: ProviderEventData

    model_config = ConfigDict(extra="ignore")


@dataclass(frozen=True)
class ProviderEvent:
    event_id: str
    event_type: str
    livemode: bool = False
    created: datetime | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    customer_id: str | None = None
    subscription_id: str | None = None
    schedule_id: str | None = None
    invoice_id: str | None = None
    payment_id: str | None = None

    @property
    def submission_id(self) -> str | None:
        value = self.metadata.get("submission_id")
        return str(value) if value else None

    def lookup_keys(self) -> dict[str, str | None]:
        return {
            "submission_id": self.submission_id,
            "schedule_id": self.schedule_id,
            "subscription_id": self.subscription_id,
            "customer_id": self.customer_id,
            "invoice_id": self.invoice_id,
            "payment_id": self.payment_id,
        }


@dataclass(frozen=True)
class InvoicePaid(ProviderEvent):
    amount_paid: int | None = None
    currency: str | None = None
    paid_at: datetime | None = None


@dataclass(frozen=True)
class PaymentIntentSucceeded(ProviderEvent):
    amount_received: int | None = None
    currency: str | None = None
    payment_method_id: str | None = None


@dataclass(frozen=True)
class SetupIntentSucceeded(ProviderEvent):
    payment_method_id: str | None = None


@dataclass(frozen=True)
class SubscriptionChanged(ProviderEvent):
    action: Literal["created", "updated", "deleted"] = "updated"
    status: str | None = None


@dataclass(frozen=True)
class ScheduleEnded(ProviderEvent):
    action: Literal["completed", "canceled"] = "completed"
    end_behavior: str | None = None


@dataclass(frozen=True)
class ChargeRefunded(ProviderEvent):
    charge_id: str | None = None
    amount: int = 0
    amount_refunded: int = 0
    refunded: bool = False

    @property
    def full_refund(self) -> bool:
        return self.refunded or (self.amount > 0 and self.amount_refunded >= self.amount)


@dataclass(frozen=True)
class PaymentFailed(ProviderEvent):
    failure_code: str | None = None
    failure_message: str | None = None


@dataclass(frozen=True)
class UnhandledEvent(ProviderEvent):
    pass


def _id(value: Any) -> str | None:
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return _id(value.get("id"))
    return None


def _timestamp(value: Any) -> datetime | None:
    if isinstance(value, (int, float)) and value > 0:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


def _dig(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def _metadata(*sources: Any) -> dict[str, str]:
    merged: dict[str, str] = {}
    for source in sources:
        if isinstance(source, dict):
            for key, value in source.items():
                if value not in (None, "") and key not in merged:
                    merged[key] = str(value)
    return merged


def _base(envelope: ProviderEventEnvelope) -> dict[str, Any]:
    return {
        "event_id": envelope.id,
        "event_type": envelope.type,
        "livemode": envelope.livemode,
        "created": _timestamp(envelope.created),
    }


def _parse_invoice(envelope: ProviderEventEnvelope) -> ProviderEvent:
    obj = envelope.data.object
    subscription_details = _dig(obj, "parent", "subscription_details") or obj.get("subscription_details") or {}
    first_payment = (_dig(obj, "payments", "data") or [None])[0]
    return InvoicePaid(
        **_base(envelope),
        metadata=_metadata(obj.get("metadata"), subscription_details.get("metadata")),
        customer_id=_id(obj.get("customer")),
        subscription_id=_id(subscription_details.get("subscription")) or _id(obj.get("subscription")),
        invoice_id=_id(obj.get("id")),
        payment_id=_id(_dig(first_payment, "payment", "payment_intent")) or _id(obj.get("payment_intent")),
        amount_paid=obj.get("amount_paid"),
        currency=obj.get("currency"),
        paid_at=_timestamp(_dig(obj, "status_transitions", "paid_at")),
    )


def _parse_invoice_payment(envelope: ProviderEventEnvelope) -> ProviderEvent:
    obj = envelope.data.object
    return InvoicePaid(
        **_base(envelope),
        metadata=_metadata(obj.get("metadata")),
        invoice_id=_id(obj.get("invoice")),
        payment_id=_id(_dig(obj, "payment", "payment_intent")),
        amount_paid=obj.get("amount_paid"),
        currency=obj.get("currency"),
        paid_at=_timestamp(_dig(obj, "status_transitions", "paid_at")),
    )


def _parse_payment_intent(envelope: ProviderEventEnvelope) -> ProviderEvent:
    obj = envelope.data.object
    common = {
        **_base(envelope),
        "metadata": _metadata(obj.get("metadata")),
        "customer_id": _id(obj.get("customer")),
        "invoice_id": _id(obj.get("invoice")),
        "payment_id": _id(obj.get("id")),
    }
    if envelope.type == "payment_intent.payment_failed":
        error = obj.get("last_payment_error") or {}
        return PaymentFailed(
            **common,
            failure_code=error.get("decline_code") or error.get("code"),
            failure_message=error.get("message") or "Payment failed",
        )
    return PaymentIntentSucceeded(
        **common,
        amount_received=obj.get("amount_received"),
        currency=obj.get("currency"),
        payment_method_id=_id(obj.get("payment_method")),
    )


def _parse_setup_intent(envelope: ProviderEventEnvelope) -> ProviderEvent:
    obj = envelope.data.object
    return SetupIntentSucceeded(
        **_base(envelope),
        metadata=_metadata(obj.get("metadata")),
        customer_id=_id(obj.get("customer")),
        payment_id=_id(obj.get("id")),
        payment_method_id=_id(obj.get("payment_method")),
    )


def _parse_subscription(envelope: ProviderEventEnvelope) -> ProviderEvent:
    obj = envelope.data.object
    return SubscriptionChanged(
        **_base(envelope),
        metadata=_metadata(obj.get("metadata")),
        customer_id=_id(obj.get("customer")),
        subscription_id=_id(obj.get("id")),
        schedule_id=_id(obj.get("schedule")),
        invoice_id=_id(obj.get("latest_invoice")),
        action=envelope.type.rsplit(".", 1)[-1],
        status=obj.get("status"),
    )


def _parse_schedule(envelope: ProviderEventEnvelope) -> ProviderEvent:
    obj = envelope.data.object
    return ScheduleEnded(
        **_base(envelope),
        metadata=_metadata(obj.get("metadata")),
        customer_id=_id(obj.get("customer")),
        subscription_id=_id(obj.get("subscription")) or _id(obj.get("released_subscription")),
        schedule_id=_id(obj.get("id")),
        action=envelope.type.rsplit(".", 1)[-1],
        end_behavior=obj.get("end_behavior"),
    )


def _parse_charge(envelope: ProviderEventEnvelope) -> ProviderEvent:
    obj = envelope.data.object
    return ChargeRefunded(
        **_base(envelope),
        metadata=_metadata(obj.get("metadata")),
        customer_id=_id(obj.get("customer")),
        invoice_id=_id(obj.get("invoice")),
        payment_id=_id(obj.get("payment_intent")),
        charge_id=_id(obj.get("id")),
        amount=int(obj.get("amount") or 0),
        amount_refunded=int(obj.get("amount_refunded") or 0),
        refunded=bool(obj.get("refunded")),
    )


_PARSERS: dict[str, Callable[[ProviderEventEnvelope], ProviderEvent]] = {
    "invoice.paid": _parse_invoice,
    "invoice.payment_succeeded": _parse_invoice,
    "invoice_payment.paid": _parse_invoice_payment,
    "payment_intent.succeeded": _parse_payment_intent,
    "payment_intent.payment_failed": _parse_payment_intent,
    "setup_intent.succeeded": _parse_setup_intent,
    "customer.subscription.created": _parse_subscription,
    "customer.subscription.updated": _parse_subscription,
    "customer.subscription.deleted": _parse_subscription,
    "subscription_schedule.completed": _parse_schedule,
    "subscription_schedule.canceled": _parse_schedule,
    "charge.refunded": _parse_charge,
}


def parse_provider_event(envelope: ProviderEventEnvelope) -> ProviderEvent:
    parser = _PARSERS.get(envelope.type)
    if parser is None:
        return UnhandledEvent(**_base(envelope), metadata=_metadata(envelope.data.object.get("metadata")))
    return parser(envelope)
