"""
Tests for landed-cost allocation.

Verifies:
- Proportional shares on every basis
- Largest-remainder rounding and conservation
- Manual shares must add up
- Zero and negative bases are rejected
"""

from decimal import Decimal

import pytest

from costing_engines.allocation import (
    AllocationBasis,
    AllocationTarget,
    LandedCostAllocationEngine,
    largest_remainder_split,
)
from costing_kernel.domain.values import Money
from costing_kernel.exceptions import ManualAllocationMismatchError, ZeroBasisError


def usd(amount):
    return Money.of(amount, "USD")


class TestLargestRemainderSplit:
    def test_even(self):
        assert largest_remainder_split(100, [Decimal("1"), Decimal("1")]) == [50, 50]

    def test_leftover_to_largest_remainder(self):
        assert largest_remainder_split(10, [Decimal("1"), Decimal("2"), Decimal("3")]) == [2, 3, 5]

    def test_tie_to_earlier_line(self):
        assert largest_remainder_split(1, [Decimal("1"), Decimal("1")]) == [1, 0]


class TestLandedCostAllocation:
    def setup_method(self):
        self.engine = LandedCostAllocationEngine()

    def test_by_value(self):
        result = self.engine.allocate(
            amount=usd("1000.00"),
            targets=[
                AllocationTarget("L1", value=usd("3000")),
                AllocationTarget("L2", value=usd("7000")),
            ],
            basis=AllocationBasis.VALUE,
        )
        assert result.for_target("L1") == usd("300.00")
        assert result.for_target("L2") == usd("700.00")
        assert result.total_allocated == usd("1000.00")

    def test_remainder_cent(self):
        result = self.engine.allocate(
            amount=usd("100.00"),
            targets=[
                AllocationTarget("L1", quantity=Decimal("1")),
                AllocationTarget("L2", quantity=Decimal("1")),
                AllocationTarget("L3", quantity=Decimal("1")),
            ],
            basis=AllocationBasis.QUANTITY,
        )
        assert [line.allocated for line in result.lines] == [
            usd("33.34"), usd("33.33"), usd("33.33"),
        ]

    def test_by_weight_and_volume(self):
        targets = [
            AllocationTarget("L1", weight=Decimal("20"), volume=Decimal("1")),
            AllocationTarget("L2", weight=Decimal("80"), volume=Decimal("3")),
        ]
        by_weight = self.engine.allocate(
            amount=usd("50"), targets=targets, basis=AllocationBasis.WEIGHT
        )
        by_volume = self.engine.allocate(
            amount=usd("50"), targets=targets, basis=AllocationBasis.VOLUME
        )
        assert by_weight.for_target("L1") == usd("10")
        assert by_volume.for_target("L2") == usd("37.50")

    def test_credit_keeps_sign(self):
        result = self.engine.allocate(
            amount=usd("-10.00"),
            targets=[
                AllocationTarget("L1", quantity=Decimal("1")),
                AllocationTarget("L2", quantity=Decimal("2")),
            ],
            basis=AllocationBasis.QUANTITY,
        )
        assert result.for_target("L1") == usd("-3.33")
        assert result.for_target("L2") == usd("-6.67")
        assert result.total_allocated == usd("-10.00")

    @pytest.mark.parametrize("amount", ["0.01", "999.99", "1234567.89", "7"])
    def test_conservation(self, amount):
        result = self.engine.allocate(
            amount=usd(amount),
            targets=[
                AllocationTarget("L1", value=usd("17.17")),
                AllocationTarget("L2", value=usd("3.01")),
                AllocationTarget("L3", value=usd("0.99")),
                AllocationTarget("L4", value=usd("123.45")),
            ],
            basis=AllocationBasis.VALUE,
        )
        assert result.total_allocated == usd(amount)

    def test_manual(self):
        result = self.engine.allocate(
            amount=usd("100"),
            targets=[
                AllocationTarget("L1", manual_amount=usd("60")),
                AllocationTarget("L2", manual_amount=usd("40")),
            ],
            basis=AllocationBasis.MANUAL,
        )
        assert result.for_target("L1") == usd("60")

    def test_manual_mismatch(self):
        with pytest.raises(ManualAllocationMismatchError):
            self.engine.allocate(
                amount=usd("100"),
                targets=[
                    AllocationTarget("L1", manual_amount=usd("60")),
                    AllocationTarget("L2", manual_amount=usd("30")),
                ],
                basis=AllocationBasis.MANUAL,
            )

    def test_zero_basis(self):
        with pytest.raises(ZeroBasisError):
            self.engine.allocate(
                amount=usd("100"),
                targets=[AllocationTarget("L1"), AllocationTarget("L2")],
                basis=AllocationBasis.WEIGHT,
            )

    def test_negative_basis(self):
        with pytest.raises(ValueError):
            self.engine.allocate(
                amount=usd("100"),
                targets=[
                    AllocationTarget("L1", quantity=Decimal("-1")),
                    AllocationTarget("L2", quantity=Decimal("2")),
                ],
                basis=AllocationBasis.QUANTITY,
            )

    def test_no_targets(self):
        with pytest.raises(ValueError):
            self.engine.allocate(amount=usd("1"), targets=[], basis=AllocationBasis.VALUE)
