"""
Unit tests for Money, Currency and decimal handling.

Verifies:
- Float constructor prohibition
- Rounding determinism (ROUND_HALF_UP to the currency minor unit)
- Currency validation and normalization
- Same-currency arithmetic
"""

from decimal import Decimal

import pytest

from costing_kernel.domain.values import Currency, Money, round_price, to_decimal
from costing_kernel.exceptions import CurrencyMismatchError, InvalidCurrencyError


class TestToDecimal:
    def test_string_and_int(self):
        assert to_decimal("10.50") == Decimal("10.50")
        assert to_decimal(3) == Decimal("3")

    def test_float_rejected(self):
        with pytest.raises(TypeError):
            to_decimal(1.5)

    def test_garbage_rejected(self):
        with pytest.raises(ValueError):
            to_decimal("ten")


class TestCurrency:
    def test_code_is_normalized(self):
        assert Currency("usd").code == "USD"

    def test_decimal_places(self):
        assert Currency("USD").decimal_places == 2
        assert Currency("JPY").decimal_places == 0
        assert Currency("BHD").decimal_places == 3

    def test_minor_unit(self):
        assert Currency("USD").minor_unit == Decimal("0.01")
        assert Currency("JPY").minor_unit == Decimal("1")

    def test_unknown_code_rejected(self):
        with pytest.raises(InvalidCurrencyError):
            Currency("XXX")


class TestMoney:
    def test_of_accepts_strings(self):
        m = Money.of("840.00", "USD")
        assert m.amount == Decimal("840.00")
        assert m.currency == Currency("USD")

    def test_float_rejected(self):
        with pytest.raises(TypeError):
            Money.of(8.4, "USD")

    def test_round_half_up(self):
        assert Money.of("2.345", "USD").round().amount == Decimal("2.35")
        assert Money.of("-2.345", "USD").round().amount == Decimal("-2.35")
        assert Money.of("2.344", "USD").round().amount == Decimal("2.34")

    def test_round_uses_currency_minor_unit(self):
        assert Money.of("100.5", "JPY").round().amount == Decimal("101")

    def test_arithmetic(self):
        a = Money.of("10.00", "USD")
        b = Money.of("2.50", "USD")
        assert a + b == Money.of("12.50", "USD")
        assert a - b == Money.of("7.50", "USD")
        assert -a == Money.of("-10.00", "USD")
        assert abs(Money.of("-3", "USD")) == Money.of("3", "USD")
        assert a * Decimal("1.5") == Money.of("15.00", "USD")
        assert a / 4 == Money.of("2.50", "USD")

    def test_mixed_currency_arithmetic_rejected(self):
        with pytest.raises(CurrencyMismatchError):
            Money.of("1", "USD") + Money.of("1", "EUR")

    def test_mixed_currency_comparison_rejected(self):
        with pytest.raises(CurrencyMismatchError):
            Money.of("1", "USD") < Money.of("2", "EUR")

    def test_sign_predicates(self):
        assert Money.zero("USD").is_zero
        assert Money.of("0.01", "USD").is_positive
        assert Money.of("-0.01", "USD").is_negative

    def test_total(self):
        items = [Money.of("1.10", "USD"), Money.of("2.20", "USD"), Money.of("3.30", "USD")]
        assert Money.total(items, "USD") == Money.of("6.60", "USD")
        assert Money.total([], "USD").is_zero

    def test_equal_amounts_with_different_scale(self):
        assert Money.of("300", "USD") == Money.of("300.00", "USD")


class TestRoundPrice:
    def test_six_places(self):
        assert round_price(Decimal("12.3456785")) == Decimal("12.345679")

    def test_exact_value_unchanged(self):
        assert round_price(Decimal("12")) == Decimal("12.000000")
