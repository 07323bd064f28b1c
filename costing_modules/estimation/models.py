"""
Cost Estimation Domain Models (``costing_modules.estimation.models``).

Frozen DTOs for cost estimates and the product structures they are rolled
up from.  BOMs and routings belong to engineering master data; this
module only reads them through the ``StructureResolver`` protocol.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

from costing_engines.rollup import CostComponentType, RoutingOperation
from costing_kernel.domain.values import Money


class EstimateStatus(Enum):
    """DRAFT -> RELEASED -> STANDARD -> ARCHIVED (RELEASED may archive directly)."""

    DRAFT = "draft"
    RELEASED = "released"
    STANDARD = "standard"
    ARCHIVED = "archived"


class ComponentOrigin(Enum):
    ROLLUP = "rollup"
    MANUAL = "manual"


ALLOWED_TRANSITIONS: dict[EstimateStatus, frozenset[EstimateStatus]] = {
    EstimateStatus.DRAFT: frozenset({EstimateStatus.RELEASED}),
    EstimateStatus.RELEASED: frozenset({EstimateStatus.STANDARD, EstimateStatus.ARCHIVED}),
    EstimateStatus.STANDARD: frozenset({EstimateStatus.ARCHIVED}),
    EstimateStatus.ARCHIVED: frozenset(),
}


@dataclass(frozen=True)
class BomComponent:
    component_id: str
    quantity: Decimal
    scrap_percent: Decimal = Decimal("0")


@dataclass(frozen=True)
class BillOfMaterials:
    material_id: str
    version: str
    components: tuple[BomComponent, ...]


@dataclass(frozen=True)
class Routing:
    material_id: str
    version: str
    operations: tuple[RoutingOperation, ...]


class StructureResolver(Protocol):
    """Source of BOMs and routings; returns None when nothing is defined."""

    def resolve_bom(
        self, material_id: str, bom_version: str | None = None
    ) -> BillOfMaterials | None: ...

    def resolve_routing(
        self, material_id: str, routing_version: str | None = None
    ) -> Routing | None: ...


class ComponentPriceSource(Protocol):
    """Current (moving-average) price of a purchased component."""

    def current_price(self, material_id: str, plant_id: str) -> Money | None: ...


class InMemoryStructureResolver:
    """Structure resolver over plain dicts, for tooling and tests."""

    def __init__(
        self,
        boms: list[BillOfMaterials] | None = None,
        routings: list[Routing] | None = None,
    ):
        self._boms: dict[tuple[str, str], BillOfMaterials] = {}
        self._routings: dict[tuple[str, str], Routing] = {}
        self._default_bom: dict[str, str] = {}
        self._default_routing: dict[str, str] = {}
        for bom in boms or []:
            self.add_bom(bom)
        for routing in routings or []:
            self.add_routing(routing)

    def add_bom(self, bom: BillOfMaterials) -> None:
        self._boms[(bom.material_id, bom.version)] = bom
        self._default_bom.setdefault(bom.material_id, bom.version)

    def add_routing(self, routing: Routing) -> None:
        self._routings[(routing.material_id, routing.version)] = routing
        self._default_routing.setdefault(routing.material_id, routing.version)

    def resolve_bom(
        self, material_id: str, bom_version: str | None = None
    ) -> BillOfMaterials | None:
        version = bom_version or self._default_bom.get(material_id)
        return self._boms.get((material_id, version)) if version else None

    def resolve_routing(
        self, material_id: str, routing_version: str | None = None
    ) -> Routing | None:
        version = routing_version or self._default_routing.get(material_id)
        return self._routings.get((material_id, version)) if version else None


@dataclass(frozen=True)
class CostComponent:
    cost_type: CostComponentType
    amount: Decimal
    fixed_amount: Decimal
    origin: ComponentOrigin = ComponentOrigin.ROLLUP

    @property
    def variable_amount(self) -> Decimal:
        return self.amount - self.fixed_amount


@dataclass(frozen=True)
class CostEstimate:
    id: UUID
    material_id: str
    plant_id: str
    costing_version: int
    valid_from: date
    lot_size: Decimal
    currency: str
    status: EstimateStatus
    total_cost: Decimal
    unit_cost: Decimal
    costing_sheet: str | None = None
    bom_version: str | None = None
    routing_version: str | None = None
    components: tuple[CostComponent, ...] = ()
    version: int = 1
    extension_attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def total(self) -> Money:
        return Money.of(self.total_cost, self.currency)

    @property
    def unit(self) -> Money:
        return Money.of(self.unit_cost, self.currency)

    def component_total(self, cost_type: CostComponentType) -> Decimal:
        return sum(
            (c.amount for c in self.components if c.cost_type is cost_type),
            Decimal("0"),
        )
