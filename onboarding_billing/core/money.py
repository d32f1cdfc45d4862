from decimal import Decimal, ROUND_HALF_UP

CENT_QUANT = Decimal("1")


def round_cents(value: Decimal | int | float | str) -> int:
    """Round a (possibly fractional) cent amount half-up to a whole cent."""
    return int(Decimal(str(value)).quantize(CENT_QUANT, rounding=ROUND_HALF_UP))


def percent_of(amount: int, percent: Decimal | int | float | str) -> int:
    return round_cents(Decimal(amount) * Decimal(str(percent)) / Decimal(100))


def clamp_cents(value: int, *, lower: int = 0, upper: int | None = None) -> int:
    if upper is not None and value > upper:
        return upper
    return max(value, lower)
