"""
Material Ledger Domain Models (``costing_modules.ledger.models``).

Frozen DTOs for ledger entries, their valuation rows, current prices,
balances and period actual-cost results, plus the price-update message
published whenever a material price moves.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Protocol
from uuid import UUID

from costing_engines.valuation import PriceMethod

PRICE_UPDATE_TOPIC = "costing.price_update"


class TransactionType(Enum):
    GOODS_RECEIPT = "goods_receipt"
    GOODS_ISSUE = "goods_issue"
    PRODUCTION_CONSUMPTION = "production_consumption"
    PRODUCTION_RECEIPT = "production_receipt"
    INVOICE_RECEIPT = "invoice_receipt"
    REVALUATION = "revaluation"
    LANDED_COST = "landed_cost"
    REVERSAL = "reversal"


class Direction(Enum):
    IN = "in"
    OUT = "out"
    NONE = "none"

    @property
    def opposite(self) -> Direction:
        if self is Direction.IN:
            return Direction.OUT
        if self is Direction.OUT:
            return Direction.IN
        return Direction.NONE


RECEIPT_TYPES = frozenset({TransactionType.GOODS_RECEIPT, TransactionType.PRODUCTION_RECEIPT})
ISSUE_TYPES = frozenset({TransactionType.GOODS_ISSUE, TransactionType.PRODUCTION_CONSUMPTION})
# Value-only acquisition cost that feeds actual cost
ADJUSTMENT_TYPES = frozenset({TransactionType.INVOICE_RECEIPT, TransactionType.LANDED_COST})


@dataclass(frozen=True)
class LedgerValuation:
    view: str
    price_type: PriceMethod
    unit_price: Decimal
    amount: Decimal


@dataclass(frozen=True)
class MaterialLedgerEntry:
    id: UUID
    sequence_id: int
    material_id: str
    plant_id: str
    transaction_type: TransactionType
    direction: Direction
    quantity: Decimal
    posting_date: date
    fiscal_year: int
    fiscal_period: int
    currency: str
    actual_unit_price: Decimal
    price_variance: Decimal
    value_adjustment: Decimal
    standard_price: Decimal | None = None
    standard_quantity: Decimal | None = None
    consuming_order_id: str | None = None
    event_id: UUID | None = None
    reversal_of_id: UUID | None = None
    reference: str | None = None
    valuations: tuple[LedgerValuation, ...] = ()

    def valuation(self, view: str, price_type: PriceMethod | None = None) -> LedgerValuation | None:
        for row in self.valuations:
            if row.view == view and (price_type is None or row.price_type is price_type):
                return row
        return None

    @property
    def signed_quantity(self) -> Decimal:
        if self.direction is Direction.OUT:
            return -self.quantity
        if self.direction is Direction.NONE:
            return Decimal("0")
        return self.quantity


@dataclass(frozen=True)
class MaterialPriceInfo:
    material_id: str
    plant_id: str
    view: str
    price_type: PriceMethod
    unit_price: Decimal
    stock_value: Decimal
    currency: str
    is_fixed: bool
    version: int


@dataclass(frozen=True)
class BalanceInfo:
    material_id: str
    plant_id: str
    quantity_on_hand: Decimal
    version: int = 0


@dataclass(frozen=True)
class ActualCostRecord:
    material_id: str
    plant_id: str
    fiscal_year: int
    fiscal_period: int
    currency: str
    receipt_quantity: Decimal
    receipt_value: Decimal
    value_adjustments: Decimal
    consumption_quantity: Decimal
    actual_unit_cost: Decimal
    standard_unit_cost: Decimal | None = None
    run_id: UUID | None = None


@dataclass(frozen=True)
class PriceUpdateInstruction:
    """A material price moved; downstream systems refresh their copy."""

    instruction_id: UUID
    material_id: str
    plant_id: str
    view: str
    price_type: str
    old_price: Decimal
    new_price: Decimal
    currency: str
    effective_date: date
    source: str
    source_id: UUID | None = None


class MessagePublisher(Protocol):
    """Outbound side of the message bus."""

    def publish(self, topic: str, message: object) -> None: ...
