"""Utilities for working with monetary values in keyswallet."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")
# Largest amount or balance, in cents, that the ledger accepts.
MAX_CENTS = 10**15
MAX_AMOUNT = Decimal(MAX_CENTS) / 100

AmountLike = Union[Decimal, int, float, str]


def to_decimal(value: AmountLike) -> Decimal:
    """Convert ``value`` to a :class:`~decimal.Decimal` with two decimal places."""

    if isinstance(value, bool):
        raise TypeError(f"Unsupported amount type: {type(value)!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation as exc:
            raise ValueError(f"Invalid amount: {value!r}") from exc
    else:
        raise TypeError(f"Unsupported amount type: {type(value)!r}")

    if not result.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    if abs(result) > MAX_AMOUNT:
        raise ValueError(f"Amount exceeds the maximum of {MAX_AMOUNT:,.2f}")
    return result.quantize(CENT, rounding=ROUND_HALF_UP)


def require_positive(amount: Decimal, *, allow_zero: bool = False) -> Decimal:
    """Ensure ``amount`` is positive (or non-negative when ``allow_zero`` is true)."""

    if allow_zero:
        if amount < Decimal("0"):
            raise ValueError("Amount must be zero or greater.")
    else:
        if amount <= Decimal("0"):
            raise ValueError("Amount must be greater than zero.")
    return amount


def to_cents(amount: AmountLike) -> int:
    """Return ``amount`` as an integer number of cents."""

    return int(to_decimal(amount) * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def format_currency(amount: Decimal, currency: str = "USD") -> str:
    """Return ``amount`` as a currency formatted string (e.g. ``$12.34``)."""

    value = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    if currency.upper() == "USD":
        if value < 0:
            return f"-${-value:,.2f}"
        return f"${value:,.2f}"
    return f"{value:,.2f} {currency.upper()}"


__all__ = ["AmountLike", "CENT", "MAX_AMOUNT", "MAX_CENTS", "format_currency", "from_cents", "require_positive", "to_cents", "to_decimal"]
