"""
Tests for the variance calculator.

Verifies:
- Price, quantity and efficiency formulas
- FAVORABLE / UNFAVORABLE classification
- Decomposition reconciles to the total deviation
- Deterministic top-N ranking
"""

from decimal import Decimal

import pytest

from costing_engines.variance import (
    VarianceCalculator,
    VarianceClassification,
    VarianceKind,
)
from costing_kernel.domain.values import Money
from costing_kernel.exceptions import CurrencyMismatchError


def usd(amount):
    return Money.of(amount, "USD")


class TestVarianceFormulas:
    def setup_method(self):
        self.calc = VarianceCalculator()

    def test_price_variance_unfavorable(self):
        result = self.calc.price_variance(
            standard_price=usd("10.00"),
            actual_price=usd("12.00"),
            actual_quantity=Decimal("100"),
        )
        assert result.kind is VarianceKind.PRICE
        assert result.variance == usd("200")
        assert result.classification is VarianceClassification.UNFAVORABLE
        assert not result.is_favorable

    def test_price_variance_favorable(self):
        result = self.calc.price_variance(
            standard_price=usd("10.00"),
            actual_price=usd("9.50"),
            actual_quantity=Decimal("100"),
        )
        assert result.variance == usd("-50")
        assert result.is_favorable

    def test_quantity_variance(self):
        result = self.calc.quantity_variance(
            standard_quantity=Decimal("90"),
            actual_quantity=Decimal("100"),
            standard_price=usd("10"),
        )
        assert result.standard == usd("900")
        assert result.actual == usd("1000")
        assert result.variance == usd("100")

    def test_efficiency_variance(self):
        result = self.calc.efficiency_variance(
            standard_hours=Decimal("10"),
            actual_hours=Decimal("8"),
            standard_rate=usd("45"),
        )
        assert result.kind is VarianceKind.EFFICIENCY
        assert result.variance == usd("-90")
        assert result.is_favorable

    def test_zero_is_unfavorable(self):
        assert VarianceClassification.of(usd("0")) is VarianceClassification.UNFAVORABLE

    def test_currency_mismatch(self):
        with pytest.raises(CurrencyMismatchError):
            self.calc.price_variance(
                standard_price=usd("10"),
                actual_price=Money.of("10", "EUR"),
                actual_quantity=Decimal("1"),
            )


class TestDecomposition:
    def setup_method(self):
        self.calc = VarianceCalculator()

    def test_price_and_quantity(self):
        d = self.calc.decompose(
            standard_price=usd("10"),
            actual_price=usd("12"),
            standard_quantity=Decimal("90"),
            actual_quantity=Decimal("100"),
        )
        assert d.standard_cost == usd("900")
        assert d.actual_cost == usd("1200")
        assert d.price_variance == usd("200")
        assert d.quantity_variance == usd("100")
        assert d.total_variance == usd("300")
        assert d.rounding_difference.is_zero
        assert d.classification is VarianceClassification.UNFAVORABLE

    def test_mixed_classification(self):
        d = self.calc.decompose(
            standard_price=usd("10"),
            actual_price=usd("9"),
            standard_quantity=Decimal("100"),
            actual_quantity=Decimal("105"),
        )
        assert d.price_variance == usd("-105")
        assert d.quantity_variance == usd("50")
        assert d.price_classification is VarianceClassification.FAVORABLE
        assert d.quantity_classification is VarianceClassification.UNFAVORABLE
        assert d.classification is VarianceClassification.FAVORABLE

    def test_rounding_difference_reported(self):
        d = self.calc.decompose(
            standard_price=usd("0.333"),
            actual_price=usd("0.337"),
            standard_quantity=Decimal("10"),
            actual_quantity=Decimal("11"),
        )
        assert d.total_variance == usd("0.38")
        assert d.price_variance == usd("0.04")
        assert d.quantity_variance == usd("0.33")
        assert d.rounding_difference == usd("0.01")

    @pytest.mark.parametrize("sp,ap,sq,aq", [
        ("0.335", "0.345", "3", "1"),
        ("1.005", "0.995", "7", "3"),
        ("2.675", "2.665", "1.5", "2.5"),
        ("0.015", "0.025", "1", "1"),
    ])
    def test_reconciles_within_one_unit(self, sp, ap, sq, aq):
        d = self.calc.decompose(
            standard_price=usd(sp),
            actual_price=usd(ap),
            standard_quantity=Decimal(sq),
            actual_quantity=Decimal(aq),
        )
        assert d.price_variance + d.quantity_variance + d.rounding_difference == d.total_variance
        assert abs(d.rounding_difference.amount) <= Decimal("0.01")

    def test_efficiency_kind(self):
        d = self.calc.decompose(
            standard_price=usd("45"),
            actual_price=usd("45"),
            standard_quantity=Decimal("10"),
            actual_quantity=Decimal("12"),
            quantity_kind=VarianceKind.EFFICIENCY,
        )
        assert d.quantity_kind is VarianceKind.EFFICIENCY
        assert d.quantity_variance == usd("90")
        assert d.price_variance.is_zero


class TestRankContributors:
    def test_top_n_each_side(self):
        favorable, unfavorable = VarianceCalculator.rank_contributors(
            [
                ("M1", usd("100")),
                ("M2", usd("-40")),
                ("M3", usd("250")),
                ("M4", usd("-90")),
                ("M1", usd("50")),
                ("M5", usd("0")),
            ],
            "USD",
            top_n=2,
        )
        assert [(c.key, c.variance) for c in unfavorable] == [
            ("M3", usd("250")),
            ("M1", usd("150")),
        ]
        assert [c.key for c in favorable] == ["M4", "M2"]

    def test_ties_broken_by_key(self):
        _, unfavorable = VarianceCalculator.rank_contributors(
            [("B", usd("10")), ("A", usd("10"))], "USD", top_n=5
        )
        assert [c.key for c in unfavorable] == ["A", "B"]
