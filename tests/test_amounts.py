"""Tests for exact decimal amount helpers."""

from __future__ import annotations

from decimal import Decimal

import pytest

from recon.amounts import (
    EPSILON,
    ZERO,
    approx_equal,
    format_amount,
    is_zero,
    quantize_cents,
    to_decimal,
    total,
)
from recon.errors import ValidationError


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("10000.00", Decimal("10000.00")),
        (" 12.5 ", Decimal("12.5")),
        (7, Decimal(7)),
        (0.1, Decimal("0.1")),
        (Decimal("3.333"), Decimal("3.333")),
    ],
)
def test_to_decimal_accepts_numeric_values(value: object, expected: Decimal) -> None:
    assert to_decimal(value) == expected


@pytest.mark.parametrize("value", [None, True, "abc", "", "NaN", "Infinity"])
def test_to_decimal_rejects_non_amounts(value: object) -> None:
    with pytest.raises(ValidationError, match="Invalid amount"):
        to_decimal(value)


def test_validation_error_is_a_value_error() -> None:
    with pytest.raises(ValueError):  # noqa: PT011
        to_decimal("twelve")


def test_total_is_exact() -> None:
    """Float summation of 0.1 three times drifts; Decimal must not."""
    assert total([Decimal("0.1")] * 3) == Decimal("0.3")
    assert total([]) == ZERO


def test_total_is_order_independent() -> None:
    amounts = [Decimal("1234.56"), Decimal("0.01"), Decimal("99999.99")]
    assert total(amounts) == total(reversed(amounts))


def test_approx_equal_uses_one_cent_tolerance() -> None:
    assert EPSILON == Decimal("0.01")
    assert approx_equal(Decimal("100.00"), Decimal("100.01"))
    assert approx_equal(Decimal("100.01"), Decimal("100.00"))
    assert not approx_equal(Decimal("100.00"), Decimal("100.011"))


def test_is_zero_within_one_cent() -> None:
    assert is_zero(Decimal("0"))
    assert is_zero(Decimal("0.005"))
    assert is_zero(Decimal("0.01"))
    assert not is_zero(Decimal("0.02"))


def test_quantize_cents_rounds_half_up() -> None:
    assert quantize_cents(Decimal("2.675")) == Decimal("2.68")
    assert quantize_cents(Decimal("2.674")) == Decimal("2.67")
    assert quantize_cents(Decimal("-0.005")) == Decimal("-0.01")


@pytest.mark.parametrize(
    ("amount", "expected"),
    [
        (Decimal("1234.5"), "1234.50"),
        (3, "3.00"),
        (0.1, "0.10"),
        (Decimal("-250"), "-250.00"),
    ],
)
def test_format_amount_two_decimals(amount: Decimal | float, expected: str) -> None:
    assert format_amount(amount) == expected
