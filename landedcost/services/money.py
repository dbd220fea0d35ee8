"""Minor-unit money helpers.

Amounts are ints in minor units (cents). Rates and multipliers are Decimals.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

Number = Union[int, Decimal]

_HUNDRED = Decimal("100")


def round_minor(value: Number) -> int:
    """Round a Decimal amount to whole minor units, half up."""
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def apply_factor(amount: int, factor: Decimal) -> int:
    return round_minor(Decimal(amount) * factor)


def percent_of(amount: int, percent: Decimal) -> int:
    """``round(amount * percent / 100)``."""
    return round_minor(Decimal(amount) * percent / _HUNDRED)


def to_minor(major: Union[str, float, Decimal]) -> int:
    """Convert a provider's major-unit price (e.g. 12.5 USD) to minor units."""
    return round_minor(Decimal(str(major)) * _HUNDRED)


def format_minor(amount: int, currency: str = "USD") -> str:
    return f"{Decimal(amount) / _HUNDRED:.2f} {currency}"
