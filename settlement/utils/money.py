from decimal import Decimal, ROUND_HALF_UP
from typing import Union

Number = Union[Decimal, int, float, str]

CENT = Decimal("0.01")


def to_decimal(value: Number) -> Decimal:
    """Convert without going through binary float representation."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize(amount: Number) -> Decimal:
    """Round a currency amount half-up to cents."""
    return to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Number) -> int:
    return int((to_decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(minor: int) -> Decimal:
    return quantize(Decimal(int(minor)) / 100)


def total_with_commission(amount: Number, rate: Number) -> int:
    """Amount plus commission, in minor units."""
    return to_minor_units(to_decimal(amount) * (1 + to_decimal(rate)))


def commission_for(amount: Number, rate: Number) -> Decimal:
    return quantize(to_decimal(amount) * to_decimal(rate))


def format_amount(amount: Number, symbol: str = "€") -> str:
    return f"{symbol}{quantize(amount):,.2f}"
