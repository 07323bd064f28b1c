"""
Module: costing_modules.wip.orm
Responsibility: SQLAlchemy persistence for production-order cost entries
    and per-period WIP positions.

Architecture position: Modules > WIP > ORM.  Inherits from TrackedBase
    (costing_kernel.db.base).

Invariants enforced:
    - source_entry_id is unique: a ledger movement is charged to WIP once.
    - (event_id, cost_type) is unique: a confirmation event books each of
      its activities once.
    - (order_id, plant_id, fiscal_year, fiscal_period) is unique per
      position.
    - Cost entries are never updated; positions are frozen once settled
      (see wip_rules()).
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, Date, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from costing_kernel.db.base import TrackedBase, UUIDString
from costing_kernel.db.immutability import ImmutabilityRule, PreviousValue


class WipCostEntryModel(TrackedBase):
    """Maps to: costing_modules.wip.models.WipCostEntry."""

    __tablename__ = "costing_wip_cost_entries"

    __table_args__ = (
        UniqueConstraint("source_entry_id", name="uq_costing_wip_source_entry"),
        UniqueConstraint("event_id", "cost_type", name="uq_costing_wip_event"),
        Index("idx_costing_wip_order", "order_id"),
        Index("idx_costing_wip_period", "plant_id", "fiscal_year", "fiscal_period"),
    )

    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    plant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    cost_type: Mapped[str] = mapped_column(String(20), nullable=False)
    posting_date: Mapped[date] = mapped_column(Date, nullable=False)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)
    fiscal_period: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    actual_quantity: Mapped[Decimal] = mapped_column(nullable=False)
    standard_quantity: Mapped[Decimal | None] = mapped_column(nullable=True)
    unit_rate: Mapped[Decimal] = mapped_column(nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    material_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    component_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source_entry_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    event_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def to_dto(self):
        from costing_modules.wip.models import WipCostEntry, WipCostType

        return WipCostEntry(
            id=self.id,
            order_id=self.order_id,
            plant_id=self.plant_id,
            cost_type=WipCostType(self.cost_type),
            posting_date=self.posting_date,
            fiscal_year=self.fiscal_year,
            fiscal_period=self.fiscal_period,
            currency=self.currency,
            actual_quantity=self.actual_quantity,
            standard_quantity=self.standard_quantity,
            unit_rate=self.unit_rate,
            amount=self.amount,
            material_id=self.material_id,
            component_id=self.component_id,
            source_entry_id=self.source_entry_id,
            event_id=self.event_id,
        )


class WIPPositionModel(TrackedBase):
    """Maps to: costing_modules.wip.models.WIPPosition."""

    __tablename__ = "costing_wip_positions"

    __table_args__ = (
        UniqueConstraint(
            "order_id", "plant_id", "fiscal_year", "fiscal_period",
            name="uq_costing_wip_position",
        ),
        Index("idx_costing_wip_position_period", "plant_id", "fiscal_year", "fiscal_period"),
    )

    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    plant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)
    fiscal_period: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    material_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    material_cost: Mapped[Decimal] = mapped_column(nullable=False)
    labor_cost: Mapped[Decimal] = mapped_column(nullable=False)
    machine_cost: Mapped[Decimal] = mapped_column(nullable=False)
    overhead_cost: Mapped[Decimal] = mapped_column(nullable=False)
    delivered_value: Mapped[Decimal] = mapped_column(nullable=False)
    total_cost: Mapped[Decimal] = mapped_column(nullable=False)
    balance: Mapped[Decimal] = mapped_column(nullable=False)
    entry_count: Mapped[int] = mapped_column(Integer, nullable=False)

    settled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    settlement_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    run_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def to_dto(self):
        from costing_modules.wip.models import WIPPosition

        return WIPPosition(
            id=self.id,
            order_id=self.order_id,
            plant_id=self.plant_id,
            fiscal_year=self.fiscal_year,
            fiscal_period=self.fiscal_period,
            currency=self.currency,
            material_cost=self.material_cost,
            labor_cost=self.labor_cost,
            machine_cost=self.machine_cost,
            overhead_cost=self.overhead_cost,
            delivered_value=self.delivered_value,
            total_cost=self.total_cost,
            balance=self.balance,
            entry_count=self.entry_count,
            material_id=self.material_id,
            settled=self.settled,
            settlement_ref=self.settlement_ref,
            settled_at=self.settled_at,
            run_id=self.run_id,
        )

    def __repr__(self) -> str:
        return (
            f"<WIPPosition {self.order_id} {self.fiscal_year}/{self.fiscal_period:02d} "
            f"{self.total_cost} settled={self.settled}>"
        )


def _settled(prev: PreviousValue) -> bool:
    return bool(prev("settled"))


def wip_rules() -> list[ImmutabilityRule]:
    return [
        ImmutabilityRule(model=WipCostEntryModel, entity_type="WipCostEntry"),
        ImmutabilityRule(
            model=WIPPositionModel,
            entity_type="WIPPosition",
            frozen_when=_settled,
        ),
    ]
