"""
Minor-unit conversion helpers shared by adapters and webhook parsers.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

# ISO-4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})


def minor_unit_exponent(currency: str) -> int:
    return 0 if (currency or "").upper() in ZERO_DECIMAL_CURRENCIES else 2


def to_minor(amount: Decimal, currency: str) -> int:
    exp = minor_unit_exponent(currency)
    return int((Decimal(amount) * (Decimal(10) ** exp)).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_minor(value: int, currency: str) -> Decimal:
    exp = minor_unit_exponent(currency)
    return (Decimal(int(value)) / (Decimal(10) ** exp)).quantize(Decimal("0.01"))


__all__ = ["ZERO_DECIMAL_CURRENCIES", "minor_unit_exponent", "to_minor", "from_minor"]
