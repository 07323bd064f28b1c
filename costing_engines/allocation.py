"""
Module: costing_engines.allocation
Responsibility:
    Distribute an indirect acquisition cost (freight, duty, insurance ...)
    across the lines of a landed-cost document by value, quantity, weight,
    volume or manual shares, with deterministic rounding.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Consumed by costing_modules.landed_cost.service.LandedCostService.

Invariants enforced:
    - Conservation: the allocated amounts of one charge sum exactly to the
      charge amount.
    - Largest-remainder rounding: each share is floored to the currency's
      minor unit; the leftover minor units go one each to the lines with the
      largest fractional remainders.  Ties go to the larger basis, then to
      the earlier line, so a replay yields the same cents on the same lines.
    - Negative charges (credits) are allocated by magnitude and keep their
      sign.

Failure modes:
    - ZeroBasisError when the basis sums to zero.
    - ManualAllocationMismatchError when manual shares do not add up.
    - ValueError on negative basis values or a charge with no targets.

Usage:
    engine = LandedCostAllocationEngine()
    result = engine.allocate(
        amount=Money.of("1000.00", "USD"),
        targets=[
            AllocationTarget(target_id="line-1", value=Money.of("3000", "USD")),
            AllocationTarget(target_id="line-2", value=Money.of("7000", "USD")),
        ],
        basis=AllocationBasis.VALUE,
    )
    # line-1: 300.00, line-2: 700.00
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from enum import Enum

from costing_engines.tracer import traced_engine
from costing_kernel.domain.values import Money
from costing_kernel.exceptions import ManualAllocationMismatchError, ZeroBasisError
from costing_kernel.logging_config import get_logger

logger = get_logger("engines.allocation")


class AllocationBasis(str, Enum):
    VALUE = "value"
    QUANTITY = "quantity"
    WEIGHT = "weight"
    VOLUME = "volume"
    MANUAL = "manual"


@dataclass(frozen=True)
class AllocationTarget:
    """A document line as seen by the allocator."""

    target_id: str
    quantity: Decimal = Decimal("0")
    value: Money | None = None
    weight: Decimal | None = None
    volume: Decimal | None = None
    manual_amount: Money | None = None

    def basis_value(self, basis: AllocationBasis) -> Decimal:
        if basis is AllocationBasis.VALUE:
            return self.value.amount if self.value is not None else Decimal("0")
        if basis is AllocationBasis.QUANTITY:
            return self.quantity
        if basis is AllocationBasis.WEIGHT:
            return self.weight or Decimal("0")
        if basis is AllocationBasis.VOLUME:
            return self.volume or Decimal("0")
        return self.manual_amount.amount if self.manual_amount is not None else Decimal("0")


@dataclass(frozen=True)
class AllocationLine:
    target_id: str
    basis_value: Decimal
    allocated: Money


@dataclass(frozen=True)
class AllocationResult:
    amount: Money
    basis: AllocationBasis
    lines: tuple[AllocationLine, ...]

    @property
    def total_allocated(self) -> Money:
        return Money.total((line.allocated for line in self.lines), self.amount.currency)

    def for_target(self, target_id: str) -> Money:
        for line in self.lines:
            if line.target_id == target_id:
                return line.allocated
        return Money.zero(self.amount.currency)


def largest_remainder_split(
    units: int,
    weights: Sequence[Decimal],
) -> list[int]:
    """
    Split a non-negative integer number of units proportionally to weights.

    Floors every exact share, then hands out the leftover units by largest
    fractional remainder, larger weight, lower index.
    """
    total = sum(weights, Decimal("0"))
    exact = [Decimal(units) * w / total for w in weights]
    floors = [int(e.to_integral_value(rounding=ROUND_FLOOR)) for e in exact]
    leftover = units - sum(floors)

    order = sorted(
        range(len(weights)),
        key=lambda i: (-(exact[i] - floors[i]), -weights[i], i),
    )
    for i in order[:leftover]:
        floors[i] += 1
    return floors


class LandedCostAllocationEngine:
    """
    Pure allocator for landed-cost charges.

    Contract:
        No I/O, fully deterministic; every charge is allocated on its own.
    """

    @traced_engine("landed_cost_allocation", "1.0", fingerprint_fields=("amount", "basis"))
    def allocate(
        self,
        *,
        amount: Money,
        targets: Sequence[AllocationTarget],
        basis: AllocationBasis,
    ) -> AllocationResult:
        if not targets:
            raise ValueError("Cannot allocate to an empty target list")

        currency = amount.currency
        rounded = amount.round()

        if basis is AllocationBasis.MANUAL:
            return self._allocate_manual(rounded, targets)

        weights = [t.basis_value(basis) for t in targets]
        if any(w < 0 for w in weights):
            raise ValueError(f"Negative {basis.value} basis on a landed cost line")
        if sum(weights, Decimal("0")) == 0:
            logger.warning(
                "landed_cost_zero_basis",
                extra={"basis": basis.value, "targets": len(targets)},
            )
            raise ZeroBasisError(basis.value)

        minor = currency.minor_unit
        units = int((abs(rounded.amount) / minor).to_integral_value(rounding=ROUND_HALF_UP))
        sign = -1 if rounded.amount < 0 else 1
        shares = largest_remainder_split(units, weights)

        lines = tuple(
            AllocationLine(
                target_id=target.target_id,
                basis_value=weight,
                allocated=Money.of(minor * share * sign, currency),
            )
            for target, weight, share in zip(targets, weights, shares)
        )
        result = AllocationResult(amount=rounded, basis=basis, lines=lines)

        assert result.total_allocated == rounded, (
            f"Allocation conservation violated: {result.total_allocated} != {rounded}"
        )
        logger.debug(
            "landed_cost_allocated",
            extra={
                "basis": basis.value,
                "amount": str(rounded.amount),
                "targets": len(targets),
            },
        )
        return result

    @staticmethod
    def _allocate_manual(
        amount: Money, targets: Sequence[AllocationTarget]
    ) -> AllocationResult:
        currency = amount.currency
        lines = tuple(
            AllocationLine(
                target_id=t.target_id,
                basis_value=t.basis_value(AllocationBasis.MANUAL),
                allocated=(t.manual_amount or Money.zero(currency)).round(),
            )
            for t in targets
        )
        result = AllocationResult(amount=amount, basis=AllocationBasis.MANUAL, lines=lines)
        if result.total_allocated != amount:
            raise ManualAllocationMismatchError(
                str(amount.amount), str(result.total_allocated.amount)
            )
        return result
