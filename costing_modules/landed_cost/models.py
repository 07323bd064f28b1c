"""
Landed Cost Domain Models (``costing_modules.landed_cost.models``).

Frozen DTOs for landed-cost documents: inbound lines, the freight, duty and
other charges on top of them, and the per-line allocation of each charge.
The split itself is done by ``costing_engines.allocation``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from costing_engines.allocation import AllocationBasis


class DocumentStatus(Enum):
    """DRAFT -> CALCULATED -> POSTED."""

    DRAFT = "draft"
    CALCULATED = "calculated"
    POSTED = "posted"


class LandedCostType(Enum):
    FREIGHT = "freight"
    DUTY = "duty"
    INSURANCE = "insurance"
    HANDLING = "handling"
    OTHER = "other"


@dataclass(frozen=True)
class LandedCostLine:
    """
    One received material on the document.

    total_landed_cost = base_unit_price * quantity + total_allocated_cost.
    """

    id: UUID
    line_number: int
    material_id: str
    quantity: Decimal
    base_unit_price: Decimal
    weight: Decimal | None = None
    volume: Decimal | None = None
    total_allocated_cost: Decimal = Decimal("0")
    total_landed_cost: Decimal = Decimal("0")
    landed_cost_per_unit: Decimal = Decimal("0")

    @property
    def base_value(self) -> Decimal:
        return self.base_unit_price * self.quantity


@dataclass(frozen=True)
class LandedCostCharge:
    id: UUID
    charge_number: int
    cost_type: LandedCostType
    amount: Decimal
    basis: AllocationBasis
    manual_amounts: dict[int, Decimal] = field(default_factory=dict)


@dataclass(frozen=True)
class AllocatedLandedCost:
    """Share of one charge carried by one line."""

    charge_id: UUID
    line_id: UUID
    cost_type: LandedCostType
    basis: AllocationBasis
    basis_value: Decimal
    amount: Decimal


@dataclass(frozen=True)
class LandedCostDocument:
    id: UUID
    document_number: str
    plant_id: str
    currency: str
    status: DocumentStatus
    version: int
    vendor_reference: str | None = None
    posting_date: date | None = None
    lines: tuple[LandedCostLine, ...] = ()
    charges: tuple[LandedCostCharge, ...] = ()
    allocations: tuple[AllocatedLandedCost, ...] = ()
    tenant_id: str | None = None
    extension_attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def total_charges(self) -> Decimal:
        return sum((c.amount for c in self.charges), Decimal("0"))

    @property
    def total_allocated(self) -> Decimal:
        return sum((a.amount for a in self.allocations), Decimal("0"))

    def line(self, line_number: int) -> LandedCostLine:
        for line in self.lines:
            if line.line_number == line_number:
                return line
        raise KeyError(line_number)
