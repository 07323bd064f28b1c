"""
costing_engines.valuation -- Price determination for one valuation view.

Responsibility:
    Given the current stock position of a material in one valuation view
    and a movement, compute the value the movement is booked at, the
    resulting position and any amount that must go to price variance
    instead of stock value.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Consumed by costing_modules.ledger.service.MaterialLedgerService.

Invariants enforced:
    - Moving average on receipt:
          new = (old_value + in_qty * in_price) / (old_qty + in_qty)
      carried at price precision and re-derived from the stock value on
      every receipt, so the price equals value / quantity whatever the
      order of receipts.
    - Issues are valued at the current price; issuing the whole stock
      takes the whole stock value so no residual is left behind.
    - Controlled prices (STANDARD views, fixed moving-average prices) never
      move with receipts; the deviation is returned as variance.
    - Value-only adjustments re-derive a moving price from value / on-hand.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum

from costing_engines.tracer import traced_engine
from costing_kernel.domain.values import Money, round_price
from costing_kernel.logging_config import get_logger

logger = get_logger("engines.valuation")


class PriceMethod(str, Enum):
    MOVING_AVERAGE = "moving_average"
    STANDARD = "standard"
    ACTUAL = "actual"


class ValuationView(str, Enum):
    LEGAL = "legal"
    GROUP = "group"
    PROFIT_CENTER = "profit_center"


@dataclass(frozen=True)
class StockPosition:
    """Stock of one material at one plant, seen through one valuation view."""

    quantity: Decimal
    unit_price: Decimal
    stock_value: Money
    is_fixed: bool = False

    @classmethod
    def empty(cls, currency: str) -> StockPosition:
        return cls(Decimal("0"), Decimal("0"), Money.zero(currency))


@dataclass(frozen=True)
class ValuationResult:
    unit_price: Decimal
    amount: Money
    position: StockPosition
    variance: Money
    previous_price: Decimal

    @property
    def price_changed(self) -> bool:
        return self.position.unit_price != self.previous_price


def _controlled(method: PriceMethod, position: StockPosition) -> bool:
    return method is PriceMethod.STANDARD or position.is_fixed


class MaterialValuationEngine:
    """Pure price determination for moving-average and standard views."""

    @traced_engine(
        "material_valuation", "1.0",
        fingerprint_fields=("method", "position", "quantity", "price", "standard_price"),
    )
    def receipt(
        self,
        *,
        method: PriceMethod,
        position: StockPosition,
        quantity: Decimal,
        price: Money,
        standard_price: Decimal | None = None,
    ) -> ValuationResult:
        currency = position.stock_value.currency
        new_quantity = position.quantity + quantity

        if method is PriceMethod.STANDARD and standard_price is None:
            # No standard yet: value at the posted price, nothing to vary
            standard_price = price.amount

        if _controlled(method, position):
            valued_at = standard_price if method is PriceMethod.STANDARD else position.unit_price
            amount = Money.of(valued_at * quantity, currency).round()
            variance = (price * quantity).round() - amount
            new_price = valued_at
        else:
            amount = (price * quantity).round()
            variance = Money.zero(currency)
            valued_at = price.amount
            if new_quantity > 0 and position.quantity > 0:
                new_price = round_price((position.stock_value + amount).amount / new_quantity)
            else:
                new_price = round_price(price.amount)

        result = ValuationResult(
            unit_price=valued_at,
            amount=amount,
            position=replace(
                position,
                quantity=new_quantity,
                unit_price=new_price,
                stock_value=position.stock_value + amount,
            ),
            variance=variance,
            previous_price=position.unit_price,
        )
        logger.debug(
            "valuation_receipt",
            extra={
                "method": method.value,
                "quantity": str(quantity),
                "old_price": str(position.unit_price),
                "new_price": str(new_price),
            },
        )
        return result

    @traced_engine(
        "material_valuation", "1.0",
        fingerprint_fields=("method", "position", "quantity", "standard_price"),
    )
    def issue(
        self,
        *,
        method: PriceMethod,
        position: StockPosition,
        quantity: Decimal,
        standard_price: Decimal | None = None,
    ) -> ValuationResult:
        currency = position.stock_value.currency
        if method is PriceMethod.STANDARD and standard_price is not None:
            valued_at = standard_price
        else:
            valued_at = position.unit_price

        if quantity == position.quantity:
            amount = position.stock_value
        else:
            amount = Money.of(valued_at * quantity, currency).round()

        return ValuationResult(
            unit_price=valued_at,
            amount=-amount,
            position=replace(
                position,
                quantity=position.quantity - quantity,
                stock_value=position.stock_value - amount,
            ),
            variance=Money.zero(currency),
            previous_price=position.unit_price,
        )

    @traced_engine(
        "material_valuation", "1.0",
        fingerprint_fields=("method", "position", "amount"),
    )
    def value_adjustment(
        self,
        *,
        method: PriceMethod,
        position: StockPosition,
        amount: Money,
    ) -> ValuationResult:
        """
        Invoice differences and landed cost.

        Absorbed into a moving price while there is stock to carry it;
        otherwise (controlled price, or nothing on hand) the amount is
        returned as variance and the position is unchanged.
        """
        currency = position.stock_value.currency
        amount = amount.round()
        if _controlled(method, position) or position.quantity <= 0:
            return ValuationResult(
                unit_price=position.unit_price,
                amount=Money.zero(currency),
                position=position,
                variance=amount,
                previous_price=position.unit_price,
            )

        new_value = position.stock_value + amount
        new_price = round_price(new_value.amount / position.quantity)
        return ValuationResult(
            unit_price=position.unit_price,
            amount=amount,
            position=replace(position, unit_price=new_price, stock_value=new_value),
            variance=Money.zero(currency),
            previous_price=position.unit_price,
        )

    def revalue(
        self,
        *,
        position: StockPosition,
        new_price: Decimal,
    ) -> ValuationResult:
        """Set a new price; the stock is revalued and the difference booked."""
        currency = position.stock_value.currency
        new_price = round_price(new_price)
        new_value = Money.of(new_price * position.quantity, currency).round()
        return ValuationResult(
            unit_price=new_price,
            amount=new_value - position.stock_value,
            position=replace(position, unit_price=new_price, stock_value=new_value),
            variance=Money.zero(currency),
            previous_price=position.unit_price,
        )

    def reverse(
        self,
        *,
        method: PriceMethod,
        position: StockPosition,
        quantity: Decimal,
        amount: Money,
    ) -> ValuationResult:
        """
        Book the mirror of an earlier movement.

        quantity and amount are signed as the reversal affects stock.  A
        moving price is re-derived from the remaining value; a controlled
        price keeps stock at that price and returns the rest as variance.
        """
        currency = position.stock_value.currency
        new_quantity = position.quantity + quantity

        if _controlled(method, position):
            stock_amount = Money.of(position.unit_price * quantity, currency).round()
            variance = amount - stock_amount
            new_price = position.unit_price
        else:
            stock_amount = amount
            variance = Money.zero(currency)
            if new_quantity > 0:
                new_price = round_price((position.stock_value + amount).amount / new_quantity)
            else:
                new_price = position.unit_price

        return ValuationResult(
            unit_price=position.unit_price,
            amount=stock_amount,
            position=replace(
                position,
                quantity=new_quantity,
                unit_price=new_price,
                stock_value=position.stock_value + stock_amount,
            ),
            variance=variance,
            previous_price=position.unit_price,
        )

    @staticmethod
    def actual_unit_cost(
        receipt_quantity: Decimal,
        receipt_value: Money,
        adjustments: Money,
    ) -> Decimal | None:
        """
        Weighted-average actual cost of a period's receipts:
        (receipt value + value adjustments) / receipt quantity.
        None when nothing was received.
        """
        if receipt_quantity <= 0:
            return None
        return round_price((receipt_value + adjustments).amount / receipt_quantity)
