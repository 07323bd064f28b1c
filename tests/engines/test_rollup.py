"""
Tests for the standard cost roll-up engine.

Verifies:
- Material, labor, machine and setup components from structure and rates
- Costing-sheet overhead on every base, with its fixed share
- Component totals equal the itemization exactly
- Invalid lot sizes and incomplete overhead bases are rejected
"""

from decimal import Decimal

import pytest

from costing_engines.rollup import (
    Activity,
    ActivityType,
    CostComponentType,
    CostRollupEngine,
    OverheadBase,
    OverheadRate,
    PricedBomLine,
    RoutingOperation,
)
from costing_kernel.domain.values import Money
from costing_kernel.exceptions import (
    CurrencyMismatchError,
    IncompleteOverheadBaseError,
    InvalidLotSizeError,
)


def usd(amount):
    return Money.of(amount, "USD")


class TestCostRollup:
    """Single-level roll-up."""

    def setup_method(self):
        self.engine = CostRollupEngine()

    def _roll(self, **kwargs):
        kwargs.setdefault("material_id", "FG1")
        kwargs.setdefault("lot_size", Decimal("100"))
        kwargs.setdefault("currency", "USD")
        return self.engine.roll_up(**kwargs)

    def test_material_and_labor(self):
        """100 units: 2 x $2.00 material plus 0.1h at $44/h."""
        result = self._roll(
            bom_lines=[PricedBomLine("C1", Decimal("2"), usd("2.00"))],
            operations=[RoutingOperation.simple("OP10", usd("44"), Decimal("0.1"))],
        )

        assert result.component(CostComponentType.MATERIAL).amount == usd("400.00")
        assert result.component(CostComponentType.LABOR).amount == usd("440.00")
        assert result.total_cost == usd("840.00")
        assert result.unit_cost.amount == Decimal("8.400000")

    def test_component_order(self):
        result = self._roll(
            bom_lines=[PricedBomLine("C1", Decimal("1"), usd("1"))],
            operations=[
                RoutingOperation("OP10", (
                    Activity(ActivityType.SETUP, usd("50"), Decimal("2")),
                    Activity(ActivityType.MACHINE, usd("80"), Decimal("0.05")),
                    Activity(ActivityType.LABOR, usd("45"), Decimal("0.1")),
                )),
            ],
            overhead=[OverheadRate("oh", OverheadBase.MATERIAL, Decimal("10"))],
        )
        assert [c.cost_type for c in result.components] == [
            CostComponentType.MATERIAL,
            CostComponentType.LABOR,
            CostComponentType.MACHINE,
            CostComponentType.SETUP,
            CostComponentType.OVERHEAD,
        ]

    def test_setup_is_per_lot_and_fixed(self):
        result = self._roll(
            operations=[
                RoutingOperation("OP10", (Activity(ActivityType.SETUP, usd("50"), Decimal("2")),)),
            ],
        )
        setup = result.component(CostComponentType.SETUP)
        assert setup.amount == usd("100.00")
        assert setup.fixed_amount == usd("100.00")
        assert setup.variable_amount.is_zero
        assert result.unit_cost.amount == Decimal("1.000000")

    def test_machine_time_scales_with_lot(self):
        result = self._roll(
            operations=[
                RoutingOperation("OP20", (Activity(ActivityType.MACHINE, usd("80"), Decimal("0.05")),)),
            ],
        )
        machine = result.component(CostComponentType.MACHINE)
        assert machine.amount == usd("400.00")
        assert machine.fixed_amount.is_zero

    def test_scrap_increases_quantity(self):
        result = self._roll(
            bom_lines=[PricedBomLine("C1", Decimal("2"), usd("2.00"), Decimal("5"))],
        )
        line = result.itemization[0]
        assert line.quantity == Decimal("210")
        assert line.amount == usd("420.00")

    def test_direct_overhead(self):
        result = self._roll(
            bom_lines=[PricedBomLine("C1", Decimal("2"), usd("2.00"))],
            operations=[RoutingOperation.simple("OP10", usd("44"), Decimal("0.1"))],
            overhead=[OverheadRate("plant overhead", OverheadBase.DIRECT, Decimal("20"))],
            sheet_code="STD-DIRECT",
        )
        assert result.component(CostComponentType.OVERHEAD).amount == usd("168.00")
        assert result.total_cost == usd("1008.00")

    def test_conversion_overhead_fixed_share(self):
        result = self._roll(
            bom_lines=[PricedBomLine("C1", Decimal("2"), usd("2.00"))],
            operations=[RoutingOperation.simple("OP10", usd("44"), Decimal("0.1"))],
            overhead=[
                OverheadRate("handling", OverheadBase.MATERIAL, Decimal("10")),
                OverheadRate("production", OverheadBase.CONVERSION, Decimal("25"), Decimal("60")),
            ],
        )
        overhead = result.component(CostComponentType.OVERHEAD)
        assert overhead.amount == usd("150.00")
        assert overhead.fixed_amount == usd("66.00")

    def test_per_unit_overhead(self):
        result = self._roll(
            bom_lines=[PricedBomLine("C1", Decimal("1"), usd("1"))],
            overhead=[OverheadRate("packaging", OverheadBase.PER_UNIT, Decimal("0.25"))],
        )
        assert result.component(CostComponentType.OVERHEAD).amount == usd("25.00")

    def test_components_equal_itemization(self):
        result = self._roll(
            lot_size=Decimal("7"),
            bom_lines=[
                PricedBomLine("C1", Decimal("1.333"), usd("0.77")),
                PricedBomLine("C2", Decimal("0.5"), usd("3.33"), Decimal("2.5")),
            ],
            operations=[RoutingOperation.simple("OP10", usd("45"), Decimal("0.037"))],
            overhead=[OverheadRate("oh", OverheadBase.DIRECT, Decimal("13.7"))],
        )
        assert result.total_cost == Money.total((i.amount for i in result.itemization), "USD")
        assert result.total_cost == Money.total((c.amount for c in result.components), "USD")

    def test_empty_structure_costs_nothing(self):
        result = self._roll()
        assert result.components == ()
        assert result.total_cost.is_zero

    @pytest.mark.parametrize("lot", [Decimal("0"), Decimal("-1")])
    def test_invalid_lot_size(self, lot):
        with pytest.raises(InvalidLotSizeError):
            self._roll(lot_size=lot)

    def test_incomplete_overhead_base(self):
        with pytest.raises(IncompleteOverheadBaseError):
            self._roll(
                bom_lines=[PricedBomLine("C1", Decimal("1"), usd("1"))],
                overhead=[OverheadRate("labor oh", OverheadBase.LABOR, Decimal("50"))],
            )

    def test_zero_rate_on_empty_base_is_allowed(self):
        result = self._roll(
            bom_lines=[PricedBomLine("C1", Decimal("1"), usd("1"))],
            overhead=[OverheadRate("labor oh", OverheadBase.LABOR, Decimal("0"))],
        )
        assert result.component(CostComponentType.OVERHEAD).amount.is_zero

    def test_currency_mismatch(self):
        with pytest.raises(CurrencyMismatchError):
            self._roll(bom_lines=[PricedBomLine("C1", Decimal("1"), Money.of("1", "EUR"))])

    def test_trace_emitted(self, captured_logs):
        self._roll(bom_lines=[PricedBomLine("C1", Decimal("1"), usd("1"))])
        traces = [r for r in captured_logs() if r["message"] == "COSTING_ENGINE_TRACE"]
        assert traces[-1]["engine_name"] == "cost_rollup"
