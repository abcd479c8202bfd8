"""Exact decimal arithmetic for currency amounts."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from recon.errors import ValidationError

if TYPE_CHECKING:
    from collections.abc import Iterable

# One cent: tolerance for equality and zero checks
EPSILON = Decimal("0.01")
ZERO = Decimal("0")
CENT = Decimal("0.01")


def to_decimal(value: Any) -> Decimal:  # noqa: ANN401
    """Coerce a stored or user-supplied amount to Decimal.

    Floats go through their string form so 0.1 stays 0.1 instead of the
    binary approximation.

    Raises:
        ValidationError: If the value is missing or not numeric
    """
    if isinstance(value, Decimal):
        return value
    if value is None or isinstance(value, bool):
        msg = f"Invalid amount: {value!r}"
        raise ValidationError(msg)
    if isinstance(value, int):
        return Decimal(value)
    try:
        result = Decimal(str(value).strip())
    except InvalidOperation:
        msg = f"Invalid amount: {value!r}"
        raise ValidationError(msg) from None
    if not result.is_finite():
        msg = f"Invalid amount: {value!r}"
        raise ValidationError(msg)
    return result


def add(a: Decimal, b: Decimal) -> Decimal:
    return a + b


def subtract(a: Decimal, b: Decimal) -> Decimal:
    return a - b


def total(amounts: Iterable[Decimal]) -> Decimal:
    """Sum amounts exactly; an empty iterable sums to zero."""
    result = ZERO
    for amount in amounts:
        result = add(result, amount)
    return result


def approx_equal(a: Decimal, b: Decimal, epsilon: Decimal = EPSILON) -> bool:
    return abs(subtract(a, b)) <= epsilon


def is_zero(a: Decimal, epsilon: Decimal = EPSILON) -> bool:
    """True for amounts at or below the epsilon (negatives included)."""
    return a <= epsilon


def quantize_cents(amount: Decimal) -> Decimal:
    """Round half-up to cents; only used at the storage boundary."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def format_amount(amount: Decimal | float | int) -> str:
    """Format amount to exactly 2 decimal places for deterministic output."""
    if isinstance(amount, float | int):
        amount = to_decimal(amount)
    return f"{quantize_cents(amount):.2f}"
