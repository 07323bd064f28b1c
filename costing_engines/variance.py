"""
costing_engines.variance -- Price, quantity and efficiency variance calculations.

Responsibility:
    Compute the deviation between standard and actual cost of a movement
    and split it into its price and quantity (or efficiency) parts.
    Classifies each part as FAVORABLE or UNFAVORABLE and ranks the largest
    contributors for reporting.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Consumed by costing_modules.variance.service.VarianceAnalyzer.

Invariants enforced:
    - price variance      = (actual price - standard price) x actual quantity
    - quantity variance   = (actual quantity - standard quantity) x standard price
    - efficiency variance = (actual hours - standard hours) x standard rate
    - decompose(): price + quantity + rounding_difference == total deviation,
      with |rounding_difference| at most one minor currency unit.
    - FAVORABLE iff actual cost < standard cost.

Failure modes:
    - CurrencyMismatchError when standard and actual prices differ in
      currency.

Usage:
    calculator = VarianceCalculator()
    result = calculator.price_variance(
        standard_price=Money.of("10.00", "USD"),
        actual_price=Money.of("12.00", "USD"),
        actual_quantity=Decimal("100"),
    )
    result.variance  # Money 200.00 USD, UNFAVORABLE
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from costing_engines.tracer import traced_engine
from costing_kernel.domain.values import Money
from costing_kernel.exceptions import CurrencyMismatchError
from costing_kernel.logging_config import get_logger

logger = get_logger("engines.variance")


class VarianceKind(str, Enum):
    PRICE = "price"
    QUANTITY = "quantity"
    EFFICIENCY = "efficiency"


class VarianceClassification(str, Enum):
    FAVORABLE = "favorable"
    UNFAVORABLE = "unfavorable"

    @classmethod
    def of(cls, variance: Money) -> VarianceClassification:
        """Negative variance (actual below standard) is favorable."""
        return cls.FAVORABLE if variance.amount < 0 else cls.UNFAVORABLE


@dataclass(frozen=True)
class VarianceResult:
    """One variance component, unrounded."""

    kind: VarianceKind
    standard: Money
    actual: Money
    variance: Money

    @property
    def classification(self) -> VarianceClassification:
        return VarianceClassification.of(self.variance)

    @property
    def is_favorable(self) -> bool:
        return self.classification is VarianceClassification.FAVORABLE


@dataclass(frozen=True)
class VarianceDecomposition:
    """
    Total deviation of a movement split into price and quantity parts.

    All amounts are rounded to the currency's minor unit.  The quantity
    part is an efficiency variance for labor and machine hours.
    """

    standard_cost: Money
    actual_cost: Money
    price_variance: Money
    quantity_variance: Money
    total_variance: Money
    rounding_difference: Money
    quantity_kind: VarianceKind = VarianceKind.QUANTITY

    @property
    def classification(self) -> VarianceClassification:
        return VarianceClassification.of(self.total_variance)

    @property
    def price_classification(self) -> VarianceClassification:
        return VarianceClassification.of(self.price_variance)

    @property
    def quantity_classification(self) -> VarianceClassification:
        return VarianceClassification.of(self.quantity_variance)


@dataclass(frozen=True)
class VarianceContributor:
    """Aggregated variance of one key (typically a material)."""

    key: str
    variance: Money

    @property
    def classification(self) -> VarianceClassification:
        return VarianceClassification.of(self.variance)


def _same_currency(left: Money, right: Money) -> None:
    if left.currency != right.currency:
        logger.error(
            "variance_currency_mismatch",
            extra={"left": left.currency.code, "right": right.currency.code},
        )
        raise CurrencyMismatchError(left.currency.code, right.currency.code)


class VarianceCalculator:
    """
    Pure function calculator for cost variances.

    Contract:
        No I/O, no database access, fully deterministic.
    Non-goals:
        Does not persist results or decide settlement accounts.
    """

    @traced_engine(
        "variance", "1.0",
        fingerprint_fields=("standard_price", "actual_price", "actual_quantity"),
    )
    def price_variance(
        self,
        *,
        standard_price: Money,
        actual_price: Money,
        actual_quantity: Decimal,
    ) -> VarianceResult:
        """(actual price - standard price) x actual quantity."""
        _same_currency(standard_price, actual_price)
        standard = standard_price * actual_quantity
        actual = actual_price * actual_quantity
        return VarianceResult(
            kind=VarianceKind.PRICE,
            standard=standard,
            actual=actual,
            variance=actual - standard,
        )

    @traced_engine(
        "variance", "1.0",
        fingerprint_fields=("standard_quantity", "actual_quantity", "standard_price"),
    )
    def quantity_variance(
        self,
        *,
        standard_quantity: Decimal,
        actual_quantity: Decimal,
        standard_price: Money,
    ) -> VarianceResult:
        """(actual quantity - standard quantity) x standard price."""
        standard = standard_price * standard_quantity
        actual = standard_price * actual_quantity
        return VarianceResult(
            kind=VarianceKind.QUANTITY,
            standard=standard,
            actual=actual,
            variance=actual - standard,
        )

    @traced_engine(
        "variance", "1.0",
        fingerprint_fields=("standard_hours", "actual_hours", "standard_rate"),
    )
    def efficiency_variance(
        self,
        *,
        standard_hours: Decimal,
        actual_hours: Decimal,
        standard_rate: Money,
    ) -> VarianceResult:
        """(actual hours - standard hours) x standard rate."""
        standard = standard_rate * standard_hours
        actual = standard_rate * actual_hours
        return VarianceResult(
            kind=VarianceKind.EFFICIENCY,
            standard=standard,
            actual=actual,
            variance=actual - standard,
        )

    def decompose(
        self,
        *,
        standard_price: Money,
        actual_price: Money,
        standard_quantity: Decimal,
        actual_quantity: Decimal,
        quantity_kind: VarianceKind = VarianceKind.QUANTITY,
    ) -> VarianceDecomposition:
        """
        Split actual-vs-standard cost into price and quantity parts.

        standard cost = standard price x standard quantity
        actual cost   = actual price x actual quantity

        Each figure is rounded on its own; the residual left by rounding is
        reported as rounding_difference rather than forced into a part.
        """
        price = self.price_variance(
            standard_price=standard_price,
            actual_price=actual_price,
            actual_quantity=actual_quantity,
        )
        if quantity_kind is VarianceKind.EFFICIENCY:
            quantity = self.efficiency_variance(
                standard_hours=standard_quantity,
                actual_hours=actual_quantity,
                standard_rate=standard_price,
            )
        else:
            quantity = self.quantity_variance(
                standard_quantity=standard_quantity,
                actual_quantity=actual_quantity,
                standard_price=standard_price,
            )

        standard_cost = (standard_price * standard_quantity).round()
        actual_cost = (actual_price * actual_quantity).round()
        total = actual_cost - standard_cost
        price_rounded = price.variance.round()
        quantity_rounded = quantity.variance.round()
        residual = total - price_rounded - quantity_rounded

        # Residual is capped at one minor unit; any excess stays in the quantity part
        unit = standard_price.currency.minor_unit
        if abs(residual.amount) > unit:
            excess = Money(residual.amount - unit.copy_sign(residual.amount), residual.currency)
            quantity_rounded = quantity_rounded + excess
            residual = residual - excess

        return VarianceDecomposition(
            standard_cost=standard_cost,
            actual_cost=actual_cost,
            price_variance=price_rounded,
            quantity_variance=quantity_rounded,
            total_variance=total,
            rounding_difference=residual,
            quantity_kind=quantity_kind,
        )

    @staticmethod
    def rank_contributors(
        variances: Iterable[tuple[str, Money]],
        currency: str,
        top_n: int,
    ) -> tuple[list[VarianceContributor], list[VarianceContributor]]:
        """
        Aggregate variances by key and return the top-N favorable and
        unfavorable contributors, largest magnitude first.  Ties are
        broken by key so the ranking is deterministic.
        """
        totals: dict[str, Money] = {}
        for key, amount in variances:
            totals[key] = totals.get(key, Money.zero(currency)) + amount

        contributors = [VarianceContributor(key=k, variance=v) for k, v in totals.items()]
        favorable = sorted(
            (c for c in contributors if c.variance.amount < 0),
            key=lambda c: (c.variance.amount, c.key),
        )
        unfavorable = sorted(
            (c for c in contributors if c.variance.amount > 0),
            key=lambda c: (-c.variance.amount, c.key),
        )
        return favorable[:top_n], unfavorable[:top_n]
