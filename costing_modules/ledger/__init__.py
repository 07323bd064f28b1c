"""
Material Ledger Module (``costing_modules.ledger``).

The material valuation store: append-only movement entries valued in every
configured view, current prices and stock values per view, on-hand
balances and the period actual-cost records written at close.
"""

from costing_modules.ledger.locks import MaterialLockRegistry, material_locks
from costing_modules.ledger.models import (
    PRICE_UPDATE_TOPIC,
    ActualCostRecord,
    BalanceInfo,
    Direction,
    LedgerValuation,
    MaterialLedgerEntry,
    MaterialPriceInfo,
    MessagePublisher,
    PriceUpdateInstruction,
    TransactionType,
)
from costing_modules.ledger.service import MaterialLedgerService

__all__ = [
    "PRICE_UPDATE_TOPIC",
    "ActualCostRecord",
    "BalanceInfo",
    "Direction",
    "LedgerValuation",
    "MaterialLedgerEntry",
    "MaterialLedgerService",
    "MaterialLockRegistry",
    "MaterialPriceInfo",
    "MessagePublisher",
    "PriceUpdateInstruction",
    "TransactionType",
    "material_locks",
]
