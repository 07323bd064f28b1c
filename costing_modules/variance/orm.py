"""
Module: costing_modules.variance.orm
Responsibility: SQLAlchemy persistence for materialized cost variances.

Architecture position: Modules > Variance > ORM.  Inherits from
    TrackedBase (costing_kernel.db.base).

Invariants enforced:
    - (source_type, source_id) is unique: one variance per ledger entry or
      WIP confirmation, so re-running the analysis adds nothing.
    - Mapper version counter; a concurrent settle raises StaleDataError
      (translated by the service).
    - Variances are frozen on creation except for the settlement stamp,
      which VarianceAnalyzer.settle() writes exactly once (see
      variance_rules()).
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from costing_kernel.db.base import TrackedBase, UUIDString
from costing_kernel.db.immutability import ImmutabilityRule


class CostVarianceModel(TrackedBase):
    """Maps to: costing_modules.variance.models.CostVariance."""

    __tablename__ = "costing_variances"

    __table_args__ = (
        UniqueConstraint("source_type", "source_id", name="uq_costing_variance_source"),
        Index("idx_costing_variance_period", "plant_id", "fiscal_year", "fiscal_period"),
        Index("idx_costing_variance_material", "material_id", "plant_id"),
    )

    source_type: Mapped[str] = mapped_column(String(20), nullable=False)
    source_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    material_id: Mapped[str] = mapped_column(String(64), nullable=False)
    plant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)
    fiscal_period: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    standard_quantity: Mapped[Decimal] = mapped_column(nullable=False)
    actual_quantity: Mapped[Decimal] = mapped_column(nullable=False)
    standard_price: Mapped[Decimal] = mapped_column(nullable=False)
    actual_price: Mapped[Decimal] = mapped_column(nullable=False)
    standard_cost: Mapped[Decimal] = mapped_column(nullable=False)
    actual_cost: Mapped[Decimal] = mapped_column(nullable=False)
    price_variance: Mapped[Decimal] = mapped_column(nullable=False)
    quantity_variance: Mapped[Decimal] = mapped_column(nullable=False)
    quantity_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    total_variance: Mapped[Decimal] = mapped_column(nullable=False)
    rounding_difference: Mapped[Decimal] = mapped_column(nullable=False)
    price_classification: Mapped[str] = mapped_column(String(20), nullable=False)
    quantity_classification: Mapped[str] = mapped_column(String(20), nullable=False)
    classification: Mapped[str] = mapped_column(String(20), nullable=False)

    run_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    settled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    settlement_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def to_dto(self):
        from costing_engines.variance import VarianceClassification, VarianceKind
        from costing_modules.variance.models import (
            CostVariance,
            VarianceCategory,
            VarianceSource,
        )

        return CostVariance(
            id=self.id,
            source_type=VarianceSource(self.source_type),
            source_id=self.source_id,
            material_id=self.material_id,
            plant_id=self.plant_id,
            fiscal_year=self.fiscal_year,
            fiscal_period=self.fiscal_period,
            category=VarianceCategory(self.category),
            currency=self.currency,
            standard_quantity=self.standard_quantity,
            actual_quantity=self.actual_quantity,
            standard_price=self.standard_price,
            actual_price=self.actual_price,
            standard_cost=self.standard_cost,
            actual_cost=self.actual_cost,
            price_variance=self.price_variance,
            quantity_variance=self.quantity_variance,
            quantity_kind=VarianceKind(self.quantity_kind),
            total_variance=self.total_variance,
            rounding_difference=self.rounding_difference,
            price_classification=VarianceClassification(self.price_classification),
            quantity_classification=VarianceClassification(self.quantity_classification),
            classification=VarianceClassification(self.classification),
            version=self.version,
            order_id=self.order_id,
            run_id=self.run_id,
            settled=self.settled,
            settlement_ref=self.settlement_ref,
            settled_at=self.settled_at,
        )

    def __repr__(self) -> str:
        return (
            f"<CostVariance {self.material_id} {self.category} "
            f"{self.total_variance} {self.classification}>"
        )


def variance_rules() -> list[ImmutabilityRule]:
    return [
        ImmutabilityRule(
            model=CostVarianceModel,
            entity_type="CostVariance",
            mutable_fields=frozenset({"settled", "settlement_ref", "settled_at"}),
        ),
    ]
