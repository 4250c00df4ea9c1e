"""Utilities for working with monetary values in the ledger."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from .exceptions import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

AmountLike = Union[Decimal, int, float, str]


def to_decimal(value: AmountLike) -> Decimal:
    """Convert ``value`` to a :class:`~decimal.Decimal` with two decimal places.

    Values carrying more precision than a cent are rejected instead of being
    rounded, so callers never lose money to an implicit rounding step.
    """

    if isinstance(value, bool):
        raise ValidationError(f"Unsupported amount type: {type(value)!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation as exc:
            raise ValidationError(f"Invalid amount: {value!r}") from exc
    else:
        raise ValidationError(f"Unsupported amount type: {type(value)!r}")

    if not result.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    quantized = result.quantize(CENT)
    if quantized != result:
        raise ValidationError(f"Amount {value!r} has more than two decimal places.")
    return quantized


def to_rate(value: AmountLike, *, maximum: Decimal = Decimal("100")) -> Decimal:
    """Parse a percentage rate (two decimal places, ``0 <= rate <= maximum``)."""

    rate = to_decimal(value)
    if rate < ZERO or rate > maximum:
        raise ValidationError(f"Rate must be between 0 and {maximum}.")
    return rate


def round_cents(value: Decimal) -> Decimal:
    """Round a computed value to cents using half-up rounding."""

    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def require_positive(amount: Decimal, *, allow_zero: bool = False) -> Decimal:
    """Ensure ``amount`` is positive (or non-negative when ``allow_zero`` is true)."""

    if allow_zero:
        if amount < ZERO:
            raise ValidationError("Amount must be zero or greater.")
    else:
        if amount <= ZERO:
            raise ValidationError("Amount must be greater than zero.")
    return amount


def to_cents(amount: Decimal) -> int:
    return int(amount.quantize(CENT) * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def format_currency(amount: Decimal) -> str:
    """Return ``amount`` as a currency formatted string (e.g. ``$12.34``)."""

    return f"${round_cents(amount):,.2f}"


__all__ = [
    "AmountLike",
    "CENT",
    "ZERO",
    "format_currency",
    "from_cents",
    "require_positive",
    "round_cents",
    "to_cents",
    "to_decimal",
    "to_rate",
]
