"""Minor-currency helpers. Stored amounts are always integer cents."""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

CENTS_PER_UNIT = Decimal("100")


def round_half_up(value: Decimal) -> int:
    """Round a Decimal to the nearest integer, ties away from zero."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_cents(amount: Optional[Union[Decimal, int, float, str]]) -> int:
    """Convert a major-unit catalog amount (e.g. 499.99) to cents."""
    if amount is None:
        return 0
    return round_half_up(Decimal(str(amount)) * CENTS_PER_UNIT)


def from_cents(cents: int) -> Decimal:
    """Display value for an amount in cents."""
    return (Decimal(cents) / CENTS_PER_UNIT).quantize(Decimal("0.01"))
