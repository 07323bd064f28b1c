"""
Module: costing_modules.landed_cost.orm
Responsibility: SQLAlchemy persistence for landed-cost documents, their
    lines, charges and computed allocations.

Architecture position: Modules > Landed Cost > ORM.  Inherits from
    TrackedBase (costing_kernel.db.base).

Invariants enforced:
    - document_number is unique; (document_id, line_number) and
      (document_id, charge_number) are unique.
    - (charge_id, line_id) is unique: one allocation per charge and line.
    - Mapper version counter on the document row.
    - A POSTED document is frozen together with its lines and charges;
      allocation rows are never updated (see landed_cost_rules()).
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from costing_kernel.db.base import TrackedBase, UUIDString
from costing_kernel.db.immutability import ImmutabilityRule, PreviousValue


class LandedCostDocumentModel(TrackedBase):
    """Maps to: costing_modules.landed_cost.models.LandedCostDocument."""

    __tablename__ = "costing_landed_cost_documents"

    __table_args__ = (
        Index("idx_costing_lc_document_plant", "plant_id", "status"),
    )

    document_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    plant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    vendor_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)
    posting_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    extension_attributes: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    lines: Mapped[list["LandedCostLineModel"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="LandedCostLineModel.line_number",
    )
    charges: Mapped[list["LandedCostChargeModel"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="LandedCostChargeModel.charge_number",
    )
    allocations: Mapped[list["AllocatedLandedCostModel"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    def to_dto(self):
        from costing_engines.allocation import AllocationBasis
        from costing_modules.landed_cost.models import (
            AllocatedLandedCost,
            DocumentStatus,
            LandedCostCharge,
            LandedCostDocument,
            LandedCostLine,
            LandedCostType,
        )

        charges = {c.id: c for c in self.charges}
        line_order = {line.id: line.line_number for line in self.lines}
        return LandedCostDocument(
            id=self.id,
            document_number=self.document_number,
            plant_id=self.plant_id,
            currency=self.currency,
            status=DocumentStatus(self.status),
            version=self.version,
            vendor_reference=self.vendor_reference,
            posting_date=self.posting_date,
            lines=tuple(
                LandedCostLine(
                    id=line.id,
                    line_number=line.line_number,
                    material_id=line.material_id,
                    quantity=line.quantity,
                    base_unit_price=line.base_unit_price,
                    weight=line.weight,
                    volume=line.volume,
                    total_allocated_cost=line.total_allocated_cost,
                    total_landed_cost=line.total_landed_cost,
                    landed_cost_per_unit=line.landed_cost_per_unit,
                )
                for line in self.lines
            ),
            charges=tuple(
                LandedCostCharge(
                    id=c.id,
                    charge_number=c.charge_number,
                    cost_type=LandedCostType(c.cost_type),
                    amount=c.amount,
                    basis=AllocationBasis(c.basis),
                    manual_amounts={
                        int(k): Decimal(v) for k, v in (c.manual_amounts or {}).items()
                    },
                )
                for c in self.charges
            ),
            allocations=tuple(
                AllocatedLandedCost(
                    charge_id=a.charge_id,
                    line_id=a.line_id,
                    cost_type=LandedCostType(charges[a.charge_id].cost_type),
                    basis=AllocationBasis(charges[a.charge_id].basis),
                    basis_value=a.basis_value,
                    amount=a.amount,
                )
                for a in sorted(
                    self.allocations,
                    key=lambda a: (
                        charges[a.charge_id].charge_number,
                        line_order.get(a.line_id, 0),
                    ),
                )
            ),
            tenant_id=self.tenant_id,
            extension_attributes=dict(self.extension_attributes or {}),
        )

    def __repr__(self) -> str:
        return f"<LandedCostDocument {self.document_number} {self.status}>"


class LandedCostLineModel(TrackedBase):
    __tablename__ = "costing_landed_cost_lines"

    __table_args__ = (
        UniqueConstraint("document_id", "line_number", name="uq_costing_lc_line_number"),
    )

    document_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("costing_landed_cost_documents.id"), nullable=False
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    material_id: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    base_unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    weight: Mapped[Decimal | None] = mapped_column(nullable=True)
    volume: Mapped[Decimal | None] = mapped_column(nullable=True)
    total_allocated_cost: Mapped[Decimal] = mapped_column(nullable=False)
    total_landed_cost: Mapped[Decimal] = mapped_column(nullable=False)
    landed_cost_per_unit: Mapped[Decimal] = mapped_column(nullable=False)

    document: Mapped[LandedCostDocumentModel] = relationship(back_populates="lines")


class LandedCostChargeModel(TrackedBase):
    __tablename__ = "costing_landed_cost_charges"

    __table_args__ = (
        UniqueConstraint(
            "document_id", "charge_number", name="uq_costing_lc_charge_number"
        ),
    )

    document_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("costing_landed_cost_documents.id"), nullable=False
    )
    charge_number: Mapped[int] = mapped_column(Integer, nullable=False)
    cost_type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    basis: Mapped[str] = mapped_column(String(20), nullable=False)
    # line_number -> amount, both as strings
    manual_amounts: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)

    document: Mapped[LandedCostDocumentModel] = relationship(back_populates="charges")


class AllocatedLandedCostModel(TrackedBase):
    """Share of one charge carried by one line; written by calculate()."""

    __tablename__ = "costing_landed_cost_allocations"

    __table_args__ = (
        UniqueConstraint("charge_id", "line_id", name="uq_costing_lc_allocation"),
    )

    document_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("costing_landed_cost_documents.id"), nullable=False
    )
    charge_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("costing_landed_cost_charges.id"), nullable=False
    )
    line_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("costing_landed_cost_lines.id"), nullable=False
    )
    basis_value: Mapped[Decimal] = mapped_column(nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)

    document: Mapped[LandedCostDocumentModel] = relationship(back_populates="allocations")


def _document_frozen(prev: PreviousValue) -> bool:
    return prev("status") == "posted"


def _child_frozen(prev: PreviousValue) -> bool:
    document = prev("document")
    return document is not None and _document_frozen(
        lambda attr: getattr(document, attr)
    )


def landed_cost_rules() -> list[ImmutabilityRule]:
    return [
        ImmutabilityRule(
            model=LandedCostDocumentModel,
            entity_type="LandedCostDocument",
            frozen_when=_document_frozen,
        ),
        ImmutabilityRule(
            model=LandedCostLineModel,
            entity_type="LandedCostLine",
            frozen_when=_child_frozen,
        ),
        ImmutabilityRule(
            model=LandedCostChargeModel,
            entity_type="LandedCostCharge",
            frozen_when=_child_frozen,
        ),
        ImmutabilityRule(
            model=AllocatedLandedCostModel,
            entity_type="AllocatedLandedCost",
        ),
    ]
