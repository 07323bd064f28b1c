"""
Module: costing_modules.estimation.orm
Responsibility: SQLAlchemy persistence for cost estimates and their cost
    components.

Architecture position: Modules > Estimation > ORM.  Inherits from
    TrackedBase (costing_kernel.db.base).  Materials and plants are
    upstream identifiers stored as strings without foreign keys.

Invariants enforced:
    - (material_id, plant_id, costing_version, valid_from) is unique.
    - At most one STANDARD estimate per material/plant: partial unique
      index on (material_id, plant_id) WHERE status = 'standard'.
    - Mapper version counter on the estimate row; a concurrent status
      change raises StaleDataError (translated by the service).
    - Estimates are frozen from RELEASED on except for status; their
      components are frozen with them (see estimate_rules()).
"""

from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from costing_kernel.db.base import TrackedBase, UUIDString
from costing_kernel.db.immutability import ImmutabilityRule, PreviousValue


class CostEstimateModel(TrackedBase):
    """
    ORM model for a lot-sized cost estimate.

    Maps to: costing_modules.estimation.models.CostEstimate.
    """

    __tablename__ = "costing_estimates"

    __table_args__ = (
        UniqueConstraint(
            "material_id", "plant_id", "costing_version", "valid_from",
            name="uq_costing_estimate_key",
        ),
        Index(
            "uq_costing_estimate_single_standard",
            "material_id",
            "plant_id",
            unique=True,
            sqlite_where=text("status = 'standard'"),
            postgresql_where=text("status = 'standard'"),
        ),
        Index("idx_costing_estimate_status", "status"),
    )

    material_id: Mapped[str] = mapped_column(String(64), nullable=False)
    plant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    costing_version: Mapped[int] = mapped_column(Integer, nullable=False)
    valid_from: Mapped[date] = mapped_column(Date, nullable=False)

    lot_size: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    bom_version: Mapped[str | None] = mapped_column(String(64), nullable=True)
    routing_version: Mapped[str | None] = mapped_column(String(64), nullable=True)
    costing_sheet: Mapped[str | None] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")

    total_cost: Mapped[Decimal] = mapped_column(nullable=False)
    unit_cost: Mapped[Decimal] = mapped_column(nullable=False)

    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    extension_attributes: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    components: Mapped[list["CostComponentModel"]] = relationship(
        back_populates="estimate",
        cascade="all, delete-orphan",
        order_by="CostComponentModel.cost_type",
    )

    __mapper_args__ = {"version_id_col": version}

    def to_dto(self):
        from costing_engines.rollup import CostComponentType
        from costing_modules.estimation.models import (
            ComponentOrigin,
            CostComponent,
            CostEstimate,
            EstimateStatus,
        )

        return CostEstimate(
            id=self.id,
            material_id=self.material_id,
            plant_id=self.plant_id,
            costing_version=self.costing_version,
            valid_from=self.valid_from,
            lot_size=self.lot_size,
            currency=self.currency,
            status=EstimateStatus(self.status),
            total_cost=self.total_cost,
            unit_cost=self.unit_cost,
            costing_sheet=self.costing_sheet,
            bom_version=self.bom_version,
            routing_version=self.routing_version,
            components=tuple(
                CostComponent(
                    cost_type=CostComponentType(c.cost_type),
                    amount=c.amount,
                    fixed_amount=c.fixed_amount,
                    origin=ComponentOrigin(c.origin),
                )
                for c in self.components
            ),
            version=self.version,
            extension_attributes=dict(self.extension_attributes or {}),
        )

    def __repr__(self) -> str:
        return (
            f"<CostEstimate {self.material_id}@{self.plant_id} "
            f"v{self.costing_version} {self.status}>"
        )


class CostComponentModel(TrackedBase):
    """One cost component of an estimate (rolled up or entered manually)."""

    __tablename__ = "costing_estimate_components"

    __table_args__ = (
        UniqueConstraint(
            "estimate_id", "cost_type", "origin", name="uq_costing_component_type"
        ),
    )

    estimate_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("costing_estimates.id"), nullable=False
    )
    cost_type: Mapped[str] = mapped_column(String(20), nullable=False)
    origin: Mapped[str] = mapped_column(String(20), nullable=False, default="rollup")
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    fixed_amount: Mapped[Decimal] = mapped_column(nullable=False)

    estimate: Mapped[CostEstimateModel] = relationship(back_populates="components")


def _estimate_frozen(prev: PreviousValue) -> bool:
    return prev("status") != "draft"


def _component_frozen(prev: PreviousValue) -> bool:
    estimate = prev("estimate")
    return estimate is not None and _estimate_frozen(
        lambda attr: getattr(estimate, attr)
    )


def estimate_rules() -> list[ImmutabilityRule]:
    return [
        ImmutabilityRule(
            model=CostEstimateModel,
            entity_type="CostEstimate",
            frozen_when=_estimate_frozen,
            mutable_fields=frozenset({"status"}),
        ),
        ImmutabilityRule(
            model=CostComponentModel,
            entity_type="CostComponent",
            frozen_when=_component_frozen,
        ),
    ]
