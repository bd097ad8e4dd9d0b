"""Currency helpers: minor-unit conversion and zero-decimal currencies."""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

# Currencies whose smallest unit is the major unit (amount 500 JPY == 500 JPY).
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})

CENT = Decimal("0.01")


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Not a valid amount: {value!r}") from exc


def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def minor_to_major(amount: Any, currency: str | None) -> Decimal:
    """2000 USD cents -> Decimal('20.00'); zero-decimal currencies pass through."""
    value = to_decimal(amount)
    if (currency or "").upper() in ZERO_DECIMAL_CURRENCIES:
        return quantize(value)
    return quantize(value / 100)


__all__ = ["ZERO_DECIMAL_CURRENCIES", "to_decimal", "quantize", "minor_to_major"]
