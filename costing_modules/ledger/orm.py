"""
Module: costing_modules.ledger.orm
Responsibility: SQLAlchemy persistence for the material ledger: append-only
    movement entries and their valuation rows, current prices per
    valuation view, on-hand balances and period actual-cost records.

Architecture position: Modules > Ledger > ORM.  Inherits from TrackedBase
    (costing_kernel.db.base).

Invariants enforced:
    - sequence_id is unique and assigned from the locked sequence counter.
    - event_id is unique: one ledger entry per integration event.
    - reversal_of_id is unique: an entry is reversed at most once.
    - (entry_id, view, price_type) is unique per valuation row.
    - MaterialPrice and MaterialBalance carry mapper version counters.
    - Entries, valuation rows and actual-cost records are never updated or
      deleted (see ledger_rules()).
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Boolean,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from costing_kernel.db.base import TrackedBase, UUIDString
from costing_kernel.db.immutability import ImmutabilityRule


class MaterialLedgerEntryModel(TrackedBase):
    """
    One material movement.

    Maps to: costing_modules.ledger.models.MaterialLedgerEntry.
    """

    __tablename__ = "costing_material_ledger_entries"

    __table_args__ = (
        UniqueConstraint("sequence_id", name="uq_costing_mle_sequence"),
        UniqueConstraint("event_id", name="uq_costing_mle_event"),
        UniqueConstraint("reversal_of_id", name="uq_costing_mle_reversal"),
        Index(
            "idx_costing_mle_material",
            "material_id", "plant_id", "posting_date", "sequence_id",
        ),
        Index("idx_costing_mle_period", "plant_id", "fiscal_year", "fiscal_period"),
        Index("idx_costing_mle_order", "consuming_order_id"),
    )

    sequence_id: Mapped[int] = mapped_column(nullable=False)
    material_id: Mapped[str] = mapped_column(String(64), nullable=False)
    plant_id: Mapped[str] = mapped_column(String(64), nullable=False)

    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False)
    direction: Mapped[str] = mapped_column(String(8), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(nullable=False)

    posting_date: Mapped[date] = mapped_column(Date, nullable=False)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)
    fiscal_period: Mapped[int] = mapped_column(Integer, nullable=False)

    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    actual_unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    standard_price: Mapped[Decimal | None] = mapped_column(nullable=True)
    standard_quantity: Mapped[Decimal | None] = mapped_column(nullable=True)
    price_variance: Mapped[Decimal] = mapped_column(nullable=False)
    value_adjustment: Mapped[Decimal] = mapped_column(nullable=False)

    consuming_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    event_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    reversal_of_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("costing_material_ledger_entries.id"),
        nullable=True,
    )
    reference: Mapped[str | None] = mapped_column(String(128), nullable=True)

    valuations: Mapped[list["MaterialLedgerValuationModel"]] = relationship(
        back_populates="entry",
        order_by="MaterialLedgerValuationModel.view",
    )

    def to_dto(self):
        from costing_engines.valuation import PriceMethod
        from costing_modules.ledger.models import (
            Direction,
            LedgerValuation,
            MaterialLedgerEntry,
            TransactionType,
        )

        return MaterialLedgerEntry(
            id=self.id,
            sequence_id=self.sequence_id,
            material_id=self.material_id,
            plant_id=self.plant_id,
            transaction_type=TransactionType(self.transaction_type),
            direction=Direction(self.direction),
            quantity=self.quantity,
            posting_date=self.posting_date,
            fiscal_year=self.fiscal_year,
            fiscal_period=self.fiscal_period,
            currency=self.currency,
            actual_unit_price=self.actual_unit_price,
            price_variance=self.price_variance,
            value_adjustment=self.value_adjustment,
            standard_price=self.standard_price,
            standard_quantity=self.standard_quantity,
            consuming_order_id=self.consuming_order_id,
            event_id=self.event_id,
            reversal_of_id=self.reversal_of_id,
            reference=self.reference,
            valuations=tuple(
                LedgerValuation(
                    view=v.view,
                    price_type=PriceMethod(v.price_type),
                    unit_price=v.unit_price,
                    amount=v.amount,
                )
                for v in self.valuations
            ),
        )

    def __repr__(self) -> str:
        return (
            f"<MaterialLedgerEntry #{self.sequence_id} {self.transaction_type} "
            f"{self.material_id}@{self.plant_id} {self.direction} {self.quantity}>"
        )


class MaterialLedgerValuationModel(TrackedBase):
    """Value of one entry in one valuation view and price type."""

    __tablename__ = "costing_material_ledger_valuations"

    __table_args__ = (
        UniqueConstraint(
            "entry_id", "view", "price_type", name="uq_costing_mlv_view"
        ),
    )

    entry_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("costing_material_ledger_entries.id"),
        nullable=False,
    )
    view: Mapped[str] = mapped_column(String(32), nullable=False)
    price_type: Mapped[str] = mapped_column(String(32), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)

    entry: Mapped[MaterialLedgerEntryModel] = relationship(back_populates="valuations")


class MaterialPriceModel(TrackedBase):
    """Current price and stock value of a material in one view."""

    __tablename__ = "costing_material_prices"

    __table_args__ = (
        UniqueConstraint(
            "material_id", "plant_id", "view", "price_type",
            name="uq_costing_material_price",
        ),
    )

    material_id: Mapped[str] = mapped_column(String(64), nullable=False)
    plant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    view: Mapped[str] = mapped_column(String(32), nullable=False)
    price_type: Mapped[str] = mapped_column(String(32), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    stock_value: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    is_fixed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def to_dto(self):
        from costing_engines.valuation import PriceMethod
        from costing_modules.ledger.models import MaterialPriceInfo

        return MaterialPriceInfo(
            material_id=self.material_id,
            plant_id=self.plant_id,
            view=self.view,
            price_type=PriceMethod(self.price_type),
            unit_price=self.unit_price,
            stock_value=self.stock_value,
            currency=self.currency,
            is_fixed=self.is_fixed,
            version=self.version,
        )


class MaterialBalanceModel(TrackedBase):
    """
    On-hand quantity of a material at a plant.

    The row every writer of the material locks first.
    """

    __tablename__ = "costing_material_balances"

    __table_args__ = (
        UniqueConstraint("material_id", "plant_id", name="uq_costing_material_balance"),
    )

    material_id: Mapped[str] = mapped_column(String(64), nullable=False)
    plant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity_on_hand: Mapped[Decimal] = mapped_column(nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class ActualCostRecordModel(TrackedBase):
    """Actual cost of a material for one closed period."""

    __tablename__ = "costing_actual_cost_records"

    __table_args__ = (
        UniqueConstraint(
            "material_id", "plant_id", "fiscal_year", "fiscal_period",
            name="uq_costing_actual_cost_period",
        ),
    )

    material_id: Mapped[str] = mapped_column(String(64), nullable=False)
    plant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)
    fiscal_period: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    receipt_quantity: Mapped[Decimal] = mapped_column(nullable=False)
    receipt_value: Mapped[Decimal] = mapped_column(nullable=False)
    value_adjustments: Mapped[Decimal] = mapped_column(nullable=False)
    consumption_quantity: Mapped[Decimal] = mapped_column(nullable=False)
    actual_unit_cost: Mapped[Decimal] = mapped_column(nullable=False)
    standard_unit_cost: Mapped[Decimal | None] = mapped_column(nullable=True)
    run_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def to_dto(self):
        from costing_modules.ledger.models import ActualCostRecord

        return ActualCostRecord(
            material_id=self.material_id,
            plant_id=self.plant_id,
            fiscal_year=self.fiscal_year,
            fiscal_period=self.fiscal_period,
            currency=self.currency,
            receipt_quantity=self.receipt_quantity,
            receipt_value=self.receipt_value,
            value_adjustments=self.value_adjustments,
            consumption_quantity=self.consumption_quantity,
            actual_unit_cost=self.actual_unit_cost,
            standard_unit_cost=self.standard_unit_cost,
            run_id=self.run_id,
        )


def ledger_rules() -> list[ImmutabilityRule]:
    return [
        ImmutabilityRule(model=MaterialLedgerEntryModel, entity_type="MaterialLedgerEntry"),
        ImmutabilityRule(model=MaterialLedgerValuationModel, entity_type="MaterialLedgerValuation"),
        ImmutabilityRule(model=ActualCostRecordModel, entity_type="ActualCostRecord"),
    ]
