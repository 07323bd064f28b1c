"""
Work-in-Process Domain Models (``costing_modules.wip.models``).

Responsibility
--------------
Frozen dataclass value objects for production-order cost accumulation:
the incremental cost entries booked to an order and the per-period WIP
position the close run builds from them.

Architecture position
---------------------
**Modules layer** -- pure data definitions with ZERO I/O.  Consumed by
``WipService`` and the period close orchestrator.

Invariants enforced
-------------------
* All models are ``frozen=True``.
* All monetary fields use ``Decimal``, never ``float``.
* ``WIPPosition.total_cost`` is the sum of its cost-type totals and
  ``balance`` is total cost less the value delivered to stock.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


class WipCostType(Enum):
    """What an entry charges (or credits) to a production order."""

    MATERIAL = "material"
    LABOR = "labor"
    MACHINE = "machine"
    OVERHEAD = "overhead"
    DELIVERY = "delivery"  # output received into stock; credits the order


@dataclass(frozen=True)
class WipCostEntry:
    """
    One cost booked to a production order.

    ``amount`` is positive for costs and negative for deliveries.  Labor and
    machine entries carry hours as quantities and the activity rate as
    ``unit_rate``; when ``standard_quantity`` is known they also bear an
    efficiency variance.
    """

    id: UUID
    order_id: str
    plant_id: str
    cost_type: WipCostType
    posting_date: date
    fiscal_year: int
    fiscal_period: int
    currency: str
    actual_quantity: Decimal
    unit_rate: Decimal
    amount: Decimal
    standard_quantity: Decimal | None = None
    material_id: str | None = None
    component_id: str | None = None
    source_entry_id: UUID | None = None
    event_id: UUID | None = None

    @property
    def bears_efficiency_variance(self) -> bool:
        return (
            self.cost_type in (WipCostType.LABOR, WipCostType.MACHINE)
            and self.standard_quantity is not None
        )


@dataclass(frozen=True)
class WIPPosition:
    """Accumulated cost of a production order in one period."""

    id: UUID
    order_id: str
    plant_id: str
    fiscal_year: int
    fiscal_period: int
    currency: str
    material_cost: Decimal
    labor_cost: Decimal
    machine_cost: Decimal
    overhead_cost: Decimal
    delivered_value: Decimal
    total_cost: Decimal
    balance: Decimal
    entry_count: int
    material_id: str | None = None
    settled: bool = False
    settlement_ref: str | None = None
    settled_at: datetime | None = None
    run_id: UUID | None = None
