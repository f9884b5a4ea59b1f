"""
Money value object.

All amounts are stored as integer minor units (cents).  Decimal amounts only
appear at boundaries that accept or display major units, and are converted
explicitly here.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

# Currencies the payment provider charges without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg",
     "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf"}
)

DEFAULT_CURRENCY = "usd"


def minor_unit_exponent(currency: str) -> int:
    return 0 if currency.lower() in ZERO_DECIMAL_CURRENCIES else 2


@dataclass(frozen=True)
class Money:
    amount_minor: int
    currency: str = DEFAULT_CURRENCY

    def __post_init__(self):
        if not isinstance(self.amount_minor, int) or isinstance(self.amount_minor, bool):
            raise TypeError("amount_minor must be an int")
        object.__setattr__(self, "currency", self.currency.lower())

    @classmethod
    def from_decimal(
        cls, amount: Union[Decimal, float, str, int], currency: str = DEFAULT_CURRENCY
    ) -> "Money":
        exponent = minor_unit_exponent(currency)
        scaled = (Decimal(str(amount)) * (Decimal(10) ** exponent)).quantize(
            Decimal(1), rounding=ROUND_HALF_UP
        )
        return cls(int(scaled), currency)

    def to_decimal(self) -> Decimal:
        exponent = minor_unit_exponent(self.currency)
        return Decimal(self.amount_minor).scaleb(-exponent)

    def __str__(self) -> str:
        return f"{self.to_decimal()} {self.currency.upper()}"


def authoritative_minor(
    minor: Optional[int],
    decimal_amount: Union[Decimal, float, str, None],
    currency: str = DEFAULT_CURRENCY,
) -> Optional[int]:
    """Pick the amount in minor units; the minor-unit value wins when both exist."""
    if minor is not None:
        return int(minor)
    if decimal_amount is None:
        return None
    return Money.from_decimal(decimal_amount, currency).amount_minor


def to_display(minor: Optional[int], currency: str = DEFAULT_CURRENCY) -> Optional[Decimal]:
    if minor is None:
        return None
    return Money(int(minor), currency).to_decimal()
