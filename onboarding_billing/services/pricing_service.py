"""Pricing for the signup package.

Everything here is pure computation: a priced order is derived from the base
package, the requested add-on languages and an optional discount code, and is
recomputed for every checkout attempt.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Literal, Mapping

from onboarding_billing.core.config import settings
from onboarding_billing.core.errors import InvalidDiscountCode, InvalidLanguageCode
from onboarding_billing.core.languages import is_valid_language_code, language_name, normalize_language_code
from onboarding_billing.core.money import clamp_cents, percent_of

DiscountKind = Literal["percent", "fixed"]
DiscountDuration = Literal["once", "forever"]


@dataclass(frozen=True)
class BaseItem:
    code: str
    description: str
    amount: int


@dataclass(frozen=True)
class DiscountRule:
    code: str
    kind: DiscountKind
    value: Decimal
    duration: DiscountDuration = "once"
    expires_at: datetime | None = None
    provider_coupon_id: str | None = None

    def is_expired(self, now: datetime) -> bool:
        if self.expires_at is None:
            return False
        expires_at = (
            self.expires_at.replace(tzinfo=timezone.utc)
            if self.expires_at.tzinfo is None
            else self.expires_at.astimezone(timezone.utc)
        )
        return expires_at <= now

    def amount_off(self, subtotal: int) -> int:
        if self.kind == "percent":
            raw = percent_of(subtotal, self.value)
        else:
            raw = int(self.value)
        return clamp_cents(raw, upper=subtotal)


@dataclass(frozen=True)
class PricingLineItem:
    id: str
    description: str
    amount: int
    original_amount: int
    quantity: int
    discount_amount: int
    is_recurring: bool


@dataclass(frozen=True)
class PricingSummary:
    base_amount: int
    addon_amounts: dict[str, int]
    subtotal: int
    discount_amount: int
    total: int
    recurring_amount: int
    recurring_discount: int
    currency: str
    discount_code: str | None
    line_items: list[PricingLineItem] = field(default_factory=list)

    @property
    def addon_languages(self) -> list[str]:
        return list(self.addon_amounts.keys())

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class DiscountCatalog:
    """Known discount codes, looked up case-insensitively."""

    def __init__(self, rules: Iterable[DiscountRule] = ()):
        self._rules: dict[str, DiscountRule] = {}
        for rule in rules:
            self._rules[rule.code.strip().upper()] = rule

    def get(self, code: str) -> DiscountRule | None:
        return self._rules.get(code.strip().upper())

    def resolve(self, code: str, *, now: datetime | None = None) -> DiscountRule:
        rule = self.get(code)
        now = now or datetime.now(timezone.utc)
        if rule is None or rule.is_expired(now):
            raise InvalidDiscountCode(code)
        return rule

    @classmethod
    def from_config(cls, entries: Iterable[Mapping[str, Any]]) -> "DiscountCatalog":
        rules = []
        for entry in entries:
            kind = str(entry.get("kind", "percent")).strip().lower()
            if kind not in {"percent", "fixed"}:
                raise ValueError(f"Unsupported discount kind: {kind}")
            value = Decimal(str(entry["value"]))
            if value < 0 or (kind == "percent" and value > 100):
                raise ValueError(f"Discount value out of range for {entry.get('code')}")
            duration = str(entry.get("duration", "once")).strip().lower()
            if duration not in {"once", "forever"}:
                raise ValueError(f"Unsupported discount duration: {duration}")
            coupon_id = entry.get("provider_coupon_id") or None
            # Recurring cycles are only discounted through a provider coupon on the schedule.
            if duration == "forever" and not coupon_id:
                raise ValueError(f"Recurring discount {entry.get('code')} needs a provider_coupon_id")
            expires_at = entry.get("expires_at")
            if isinstance(expires_at, str):
                expires_at = datetime.fromisoformat(expires_at)
            rules.append(
                DiscountRule(
                    code=str(entry["code"]).strip(),
                    kind=kind,
                    value=value,
                    duration=duration,
                    expires_at=expires_at,
                    provider_coupon_id=coupon_id,
                )
            )
        return cls(rules)


def default_base_item() -> BaseItem:
    return BaseItem(
        code="base_package",
        description="Base Package (monthly)",
        amount=settings.base_package_amount,
    )


def default_discount_catalog() -> DiscountCatalog:
    return DiscountCatalog.from_config(settings.discount_codes)


def normalize_language_codes(codes: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for code in codes:
        if not isinstance(code, str):
            continue
        normalized = normalize_language_code(code)
        if normalized:
            seen.setdefault(normalized, None)
    return list(seen.keys())


def validate_language_codes(codes: Iterable[str]) -> list[str]:
    """Returns the invalid codes, empty when all are supported."""
    return [code for code in codes if not is_valid_language_code(code)]


def _allocate_discount(amounts: list[int], discount: int) -> list[int]:
    allocation = []
    remaining = discount
    for amount in amounts:
        share = min(amount, remaining)
        allocation.append(share)
        remaining -= share
    return allocation


def compute_pricing(
    base_item: BaseItem,
    addon_language_codes: Iterable[str],
    discount_code: str | None = None,
    *,
    catalog: DiscountCatalog,
    addon_amount: int | None = None,
    currency: str | None = None,
    now: datetime | None = None,
) -> PricingSummary:
    languages = normalize_language_codes(addon_language_codes)
    invalid = validate_language_codes(languages)
    if invalid:
        raise InvalidLanguageCode(invalid)

    rule: DiscountRule | None = None
    cleaned_code = (discount_code or "").strip()
    if cleaned_code:
        rule = catalog.resolve(cleaned_code, now=now)

    per_addon = settings.language_addon_amount if addon_amount is None else addon_amount
    addon_amounts = {code: per_addon for code in languages}
    subtotal = base_item.amount + sum(addon_amounts.values())
    discount_amount = rule.amount_off(subtotal) if rule else 0
    total = clamp_cents(subtotal - discount_amount)

    amounts = [base_item.amount, *addon_amounts.values()]
    allocation = _allocate_discount(amounts, discount_amount)
    line_items = [
        PricingLineItem(
            id=base_item.code,
            description=base_item.description,
            amount=base_item.amount - allocation[0],
            original_amount=base_item.amount,
            quantity=1,
            discount_amount=allocation[0],
            is_recurring=True,
        )
    ]
    for index, code in enumerate(languages, start=1):
        line_items.append(
            PricingLineItem(
                id=f"language_addon:{code}",
                description=f"{language_name(code)} Language Add-on",
                amount=addon_amounts[code] - allocation[index],
                original_amount=addon_amounts[code],
                quantity=1,
                discount_amount=allocation[index],
                is_recurring=False,
            )
        )

    recurring_discount = 0
    if rule and rule.duration == "forever":
        recurring_discount = rule.amount_off(base_item.amount)

    return PricingSummary(
        base_amount=base_item.amount,
        addon_amounts=addon_amounts,
        subtotal=subtotal,
        discount_amount=discount_amount,
        total=total,
        recurring_amount=base_item.amount - recurring_discount,
        recurring_discount=recurring_discount,
        currency=(currency or settings.billing_currency).lower(),
        discount_code=rule.code if rule else None,
        line_items=line_items,
    )
