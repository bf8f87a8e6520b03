"""Minor/major currency unit conversion.

All arithmetic in the services is done on integer minor units; these helpers
are only used when talking to a rail that speaks decimal strings and when
rendering amounts for presentation.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

ZERO_DECIMAL_CURRENCIES = {
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
}
THREE_DECIMAL_CURRENCIES = {"BHD", "JOD", "KWD", "OMR", "TND"}


def currency_exponent(currency: str | None) -> int:
    code = (currency or "").upper()
    if code in ZERO_DECIMAL_CURRENCIES:
        return 0
    if code in THREE_DECIMAL_CURRENCIES:
        return 3
    return 2


def to_major(amount_minor: int, currency: str | None) -> Decimal:
    """Convert minor units to a quantized major-unit Decimal."""

    exponent = currency_exponent(currency)
    quantum = Decimal(1).scaleb(-exponent)
    return (Decimal(amount_minor).scaleb(-exponent)).quantize(quantum)


def to_minor(amount: Decimal | str | int | float, currency: str | None) -> int:
    """Convert a major-unit amount (as sent by decimal-string rails) to minor units."""

    exponent = currency_exponent(currency)
    normalized = Decimal(str(amount)).scaleb(exponent)
    return int(normalized.quantize(Decimal(1), rounding=ROUND_HALF_UP))


__all__ = ["currency_exponent", "to_major", "to_minor"]
