"""
costing_engines.rollup -- Standard cost roll-up for a costing lot.

Responsibility:
    Turns priced BOM lines, routing activities and a costing sheet into
    cost components (material, labor, machine, setup, overhead), a total
    cost and a unit cost for one costing lot.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Consumed by costing_modules.estimation.service.CostEstimateService,
    which resolves structures and component prices before calling in.

Invariants enforced:
    - Every itemized line is rounded to the currency's minor unit; each
      component is the sum of its rounded lines and the total is the sum
      of the components, so sum(components) == total_cost exactly.
    - unit_cost = total_cost / lot_size at price precision.
    - Setup time is per lot and fully fixed; labor and machine time are
      per unit of output and scale with the lot size.

Failure modes:
    - InvalidLotSizeError when lot_size <= 0.
    - IncompleteOverheadBaseError when an overhead line has a non-zero rate
      but its base is zero.
    - CurrencyMismatchError when prices are in another currency.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from costing_engines.tracer import traced_engine
from costing_kernel.domain.values import Currency, Money, round_price
from costing_kernel.exceptions import (
    CurrencyMismatchError,
    IncompleteOverheadBaseError,
    InvalidLotSizeError,
)
from costing_kernel.logging_config import get_logger

logger = get_logger("engines.rollup")

_HUNDRED = Decimal("100")


class CostComponentType(str, Enum):
    MATERIAL = "material"
    LABOR = "labor"
    MACHINE = "machine"
    SETUP = "setup"
    OVERHEAD = "overhead"
    OTHER = "other"


class ActivityType(str, Enum):
    MACHINE = "machine"
    LABOR = "labor"
    SETUP = "setup"


class OverheadBase(str, Enum):
    MATERIAL = "material"
    LABOR = "labor"
    MACHINE = "machine"
    CONVERSION = "conversion"
    DIRECT = "direct"
    PER_UNIT = "per_unit"


@dataclass(frozen=True)
class PricedBomLine:
    """BOM line with its component unit cost already determined."""

    component_id: str
    quantity: Decimal
    unit_cost: Money
    scrap_percent: Decimal = Decimal("0")


@dataclass(frozen=True)
class Activity:
    activity_type: ActivityType
    rate: Money
    duration: Decimal


@dataclass(frozen=True)
class RoutingOperation:
    operation_id: str
    activities: tuple[Activity, ...]

    @classmethod
    def simple(cls, operation_id: str, rate: Money, duration: Decimal) -> RoutingOperation:
        """A plain (operation, rate, duration) step is labor time."""
        return cls(operation_id, (Activity(ActivityType.LABOR, rate, duration),))


@dataclass(frozen=True)
class OverheadRate:
    name: str
    base: OverheadBase
    rate: Decimal
    fixed_percent: Decimal = Decimal("0")


@dataclass(frozen=True)
class ItemizationLine:
    """One priced contribution to the estimate."""

    cost_type: CostComponentType
    source: str
    quantity: Decimal
    amount: Money
    fixed_amount: Money


@dataclass(frozen=True)
class ComponentCost:
    cost_type: CostComponentType
    amount: Money
    fixed_amount: Money

    @property
    def variable_amount(self) -> Money:
        return self.amount - self.fixed_amount


@dataclass(frozen=True)
class RollupResult:
    lot_size: Decimal
    components: tuple[ComponentCost, ...]
    itemization: tuple[ItemizationLine, ...]
    total_cost: Money
    unit_cost: Money

    def component(self, cost_type: CostComponentType) -> ComponentCost | None:
        for component in self.components:
            if component.cost_type is cost_type:
                return component
        return None


_ACTIVITY_COMPONENT = {
    ActivityType.MACHINE: CostComponentType.MACHINE,
    ActivityType.LABOR: CostComponentType.LABOR,
    ActivityType.SETUP: CostComponentType.SETUP,
}

_COMPONENT_ORDER = (
    CostComponentType.MATERIAL,
    CostComponentType.LABOR,
    CostComponentType.MACHINE,
    CostComponentType.SETUP,
    CostComponentType.OVERHEAD,
    CostComponentType.OTHER,
)


class CostRollupEngine:
    """
    Pure roll-up of one costing level.

    Multi-level structures are handled by the caller, which rolls up
    sub-assemblies first and passes their unit cost in as a priced line.
    """

    @traced_engine(
        "cost_rollup", "1.0",
        fingerprint_fields=("material_id", "lot_size", "bom_lines", "operations", "overhead"),
    )
    def roll_up(
        self,
        *,
        material_id: str,
        lot_size: Decimal,
        currency: str | Currency,
        bom_lines: Sequence[PricedBomLine] = (),
        operations: Sequence[RoutingOperation] = (),
        overhead: Sequence[OverheadRate] = (),
        sheet_code: str = "",
    ) -> RollupResult:
        if lot_size <= 0:
            raise InvalidLotSizeError(material_id, lot_size)
        currency = Currency(currency) if isinstance(currency, str) else currency
        zero = Money.zero(currency)

        items: list[ItemizationLine] = []

        for line in bom_lines:
            self._check_currency(line.unit_cost, currency)
            quantity = line.quantity * lot_size * (1 + line.scrap_percent / _HUNDRED)
            items.append(
                ItemizationLine(
                    cost_type=CostComponentType.MATERIAL,
                    source=line.component_id,
                    quantity=quantity,
                    amount=(line.unit_cost * quantity).round(),
                    fixed_amount=zero,
                )
            )

        for operation in operations:
            for activity in operation.activities:
                self._check_currency(activity.rate, currency)
                if activity.activity_type is ActivityType.SETUP:
                    hours = activity.duration
                else:
                    hours = activity.duration * lot_size
                amount = (activity.rate * hours).round()
                items.append(
                    ItemizationLine(
                        cost_type=_ACTIVITY_COMPONENT[activity.activity_type],
                        source=operation.operation_id,
                        quantity=hours,
                        amount=amount,
                        fixed_amount=amount if activity.activity_type is ActivityType.SETUP else zero,
                    )
                )

        direct = self._sum_by_type(items, currency)
        for rate in overhead:
            base_amount = self._overhead_base(rate.base, direct, zero)
            if rate.base is OverheadBase.PER_UNIT:
                amount = (Money.of(rate.rate, currency) * lot_size).round()
            else:
                if base_amount.is_zero and rate.rate != 0:
                    logger.warning(
                        "overhead_base_incomplete",
                        extra={
                            "material_id": material_id,
                            "sheet_code": sheet_code,
                            "base": rate.base.value,
                        },
                    )
                    raise IncompleteOverheadBaseError(sheet_code, rate.base.value, str(rate.rate))
                amount = (base_amount * rate.rate / _HUNDRED).round()
            items.append(
                ItemizationLine(
                    cost_type=CostComponentType.OVERHEAD,
                    source=rate.name,
                    quantity=base_amount.amount if rate.base is not OverheadBase.PER_UNIT else lot_size,
                    amount=amount,
                    fixed_amount=(amount * rate.fixed_percent / _HUNDRED).round(),
                )
            )

        components = self._components(items, currency)
        total = Money.total((c.amount for c in components), currency)
        unit_cost = Money.of(round_price(total.amount / lot_size), currency)

        assert total == Money.total((i.amount for i in items), currency), (
            "component totals diverge from itemization"
        )

        logger.debug(
            "cost_rollup_completed",
            extra={
                "material_id": material_id,
                "lot_size": str(lot_size),
                "total_cost": str(total.amount),
                "unit_cost": str(unit_cost.amount),
                "components": len(components),
            },
        )
        return RollupResult(
            lot_size=lot_size,
            components=components,
            itemization=tuple(items),
            total_cost=total,
            unit_cost=unit_cost,
        )

    @staticmethod
    def _check_currency(price: Money, currency: Currency) -> None:
        if price.currency != currency:
            raise CurrencyMismatchError(price.currency.code, currency.code)

    @staticmethod
    def _sum_by_type(
        items: Sequence[ItemizationLine], currency: Currency
    ) -> dict[CostComponentType, Money]:
        totals: dict[CostComponentType, Money] = {}
        for item in items:
            totals[item.cost_type] = totals.get(item.cost_type, Money.zero(currency)) + item.amount
        return totals

    @staticmethod
    def _overhead_base(
        base: OverheadBase,
        direct: dict[CostComponentType, Money],
        zero: Money,
    ) -> Money:
        material = direct.get(CostComponentType.MATERIAL, zero)
        labor = direct.get(CostComponentType.LABOR, zero)
        machine = direct.get(CostComponentType.MACHINE, zero)
        setup = direct.get(CostComponentType.SETUP, zero)
        conversion = labor + machine + setup
        if base is OverheadBase.MATERIAL:
            return material
        if base is OverheadBase.LABOR:
            return labor
        if base is OverheadBase.MACHINE:
            return machine
        if base is OverheadBase.CONVERSION:
            return conversion
        if base is OverheadBase.DIRECT:
            return material + conversion
        return zero

    @staticmethod
    def _components(
        items: Sequence[ItemizationLine], currency: Currency
    ) -> tuple[ComponentCost, ...]:
        amounts: dict[CostComponentType, Money] = {}
        fixed: dict[CostComponentType, Money] = {}
        for item in items:
            zero = Money.zero(currency)
            amounts[item.cost_type] = amounts.get(item.cost_type, zero) + item.amount
            fixed[item.cost_type] = fixed.get(item.cost_type, zero) + item.fixed_amount
        return tuple(
            ComponentCost(cost_type=t, amount=amounts[t], fixed_amount=fixed[t])
            for t in _COMPONENT_ORDER
            if t in amounts
        )
