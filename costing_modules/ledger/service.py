"""
Material Ledger Service (``costing_modules.ledger.service``).

Responsibility
--------------
The material valuation store.  Every goods movement, invoice difference,
landed cost and revaluation becomes one immutable ledger entry valued in
every configured valuation view; current prices, stock values and on-hand
balances are maintained alongside.  At period close it derives the
period's actual cost and appends the ACTUAL valuation rows.

Architecture
------------
Layer: **Modules** -- stateful orchestration over
``costing_engines.valuation.MaterialValuationEngine``.

1. PeriodService validates that the posting date lies in an OPEN period.
2. The (material, plant) lock and a ``SELECT ... FOR UPDATE`` on the
   balance row serialize writers of one material.
3. The engine prices the movement per view; the service persists the
   entry, its valuation rows, the new prices and the new balance.
4. PriceUpdateInstruction messages are published after commit.

Invariants
----------
- Entries and valuation rows are append-only; corrections are reversals.
- sequence_id is strictly increasing, allocated under the counter lock.
- One entry per source event_id (a repeated event returns the first entry).
- Price and balance rows carry version counters; an unserialized
  concurrent write fails with retryable ConcurrencyConflictError.

Failure Modes
-------------
- InvalidQuantityError, NegativeBalanceError, MissingStandardCostError.
- PeriodLockedError / PeriodNotFoundError from PeriodService.
- EntryNotFoundError, EntryAlreadyReversedError on reversal.
- CurrencyMismatchError for prices outside the configured currency.

Usage::

    ledger = MaterialLedgerService(session, config=config, clock=clock)
    ledger.post_goods_receipt(
        material_id="RM-1", plant_id="P1", quantity=Decimal("100"),
        unit_price=Money.of("10.00", "USD"), posting_date=date(2024, 1, 5),
        actor_id=actor_id,
    )
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Mapping
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from costing_config import CostingConfig, get_active_config
from costing_engines.valuation import (
    MaterialValuationEngine,
    PriceMethod,
    StockPosition,
    ValuationResult,
)
from costing_kernel.db.versioning import stale_data_as_conflict
from costing_kernel.domain.clock import Clock, SystemClock
from costing_kernel.domain.values import Money
from costing_kernel.exceptions import (
    ConcurrencyConflictError,
    CurrencyMismatchError,
    EntryAlreadyReversedError,
    EntryNotFoundError,
    InvalidQuantityError,
    MissingStandardCostError,
    NegativeBalanceError,
    ValidationError,
)
from costing_kernel.logging_config import LogContext, get_logger
from costing_kernel.services.period_service import PeriodService
from costing_kernel.services.sequence_service import SequenceService
from costing_kernel.utils.idempotency import deterministic_id
from costing_modules._service_helpers import transaction_boundary
from costing_modules.estimation.service import StandardCostReader
from costing_modules.ledger.locks import MaterialLockRegistry, material_locks
from costing_modules.ledger.models import (
    ADJUSTMENT_TYPES,
    ISSUE_TYPES,
    PRICE_UPDATE_TOPIC,
    RECEIPT_TYPES,
    ActualCostRecord,
    BalanceInfo,
    Direction,
    MaterialLedgerEntry,
    MaterialPriceInfo,
    MessagePublisher,
    PriceUpdateInstruction,
    TransactionType,
)
from costing_modules.ledger.orm import (
    ActualCostRecordModel,
    MaterialBalanceModel,
    MaterialLedgerEntryModel,
    MaterialLedgerValuationModel,
    MaterialPriceModel,
)

logger = get_logger("modules.ledger.service")

UnitPrices = Money | Mapping[str, Money]

_ZERO = Decimal("0")


class MaterialLedgerService:
    """
    Material valuation store.

    Contract
    --------
    Public methods return frozen DTOs.  Each posting owns its transaction
    (commit on success, rollback on failure) unless built with
    ``auto_commit=False``.
    """

    def __init__(
        self,
        session: Session,
        config: CostingConfig | None = None,
        clock: Clock | None = None,
        publisher: MessagePublisher | None = None,
        locks: MaterialLockRegistry | None = None,
        auto_commit: bool = True,
    ):
        self._session = session
        self._config = config or get_active_config()
        self._clock = clock or SystemClock()
        self._publisher = publisher
        self._locks = locks or material_locks
        self._auto_commit = auto_commit

        self._periods = PeriodService(session, self._clock)
        self._sequences = SequenceService(session)
        self._standards = StandardCostReader(session)
        self._engine = MaterialValuationEngine()

        self._currency = self._config.currency
        self._primary_view = self._config.primary_view.view
        self._posting_views = [
            (v.view, PriceMethod(v.price_method))
            for v in self._config.valuation_views
            if v.price_method != PriceMethod.ACTUAL.value
        ]
        self._actual_views = [
            v.view for v in self._config.valuation_views
            if v.price_method == PriceMethod.ACTUAL.value
        ]

    # =========================================================================
    # Posting
    # =========================================================================

    def post(
        self,
        transaction_type: TransactionType,
        material_id: str,
        plant_id: str,
        quantity: Decimal,
        direction: Direction,
        unit_prices: UnitPrices | None,
        posting_date: date,
        actor_id: UUID,
        *,
        value_adjustment: Money | None = None,
        invoice_quantity: Decimal | None = None,
        standard_quantity: Decimal | None = None,
        consuming_order_id: str | None = None,
        event_id: UUID | None = None,
        reference: str | None = None,
        allow_backorder: bool | None = None,
    ) -> MaterialLedgerEntry:
        """
        Post one movement and value it in every posting-time view.

        Preconditions:
            - IN/OUT movements have quantity > 0; IN movements carry prices.
            - Value-only movements (direction NONE) are invoice receipts or
              landed cost and carry a value_adjustment, or invoice_quantity
              with the invoice price for an invoice receipt.
        Postconditions:
            - One entry with one valuation row per posting-time view;
              prices, stock values and the balance are updated.
        """
        self._validate_posting(
            transaction_type, material_id, quantity, direction,
            unit_prices, value_adjustment, invoice_quantity,
        )
        logger.info(
            "material_posting_started",
            extra={
                "transaction_type": transaction_type.value,
                "material_id": material_id,
                "plant_id": plant_id,
                "quantity": str(quantity),
                "direction": direction.value,
                "posting_date": str(posting_date),
            },
        )

        with LogContext.bind(material_id=material_id, plant_id=plant_id):
            with self._locks.hold(material_id, plant_id):
                with transaction_boundary(
                    self._session, self._auto_commit, logger, "material_posting",
                    material_id=material_id, plant_id=plant_id,
                    transaction_type=transaction_type.value,
                ):
                    entry, instructions = self._post_locked(
                        transaction_type, material_id, plant_id,
                        quantity if direction is not Direction.NONE else _ZERO,
                        direction, unit_prices, posting_date, actor_id,
                        value_adjustment=value_adjustment,
                        invoice_quantity=invoice_quantity,
                        standard_quantity=standard_quantity,
                        consuming_order_id=consuming_order_id,
                        event_id=event_id,
                        reference=reference,
                        allow_backorder=allow_backorder,
                    )
            self._publish(instructions)

        logger.info(
            "material_posted",
            extra={
                "entry_id": str(entry.id),
                "sequence_id": entry.sequence_id,
                "transaction_type": entry.transaction_type.value,
                "price_variance": str(entry.price_variance),
                "value_adjustment": str(entry.value_adjustment),
            },
        )
        return entry

    def post_goods_receipt(
        self,
        material_id: str,
        plant_id: str,
        quantity: Decimal,
        unit_price: UnitPrices,
        posting_date: date,
        actor_id: UUID,
        **kwargs,
    ) -> MaterialLedgerEntry:
        return self.post(
            TransactionType.GOODS_RECEIPT, material_id, plant_id, quantity,
            Direction.IN, unit_price, posting_date, actor_id, **kwargs,
        )

    def post_goods_issue(
        self,
        material_id: str,
        plant_id: str,
        quantity: Decimal,
        posting_date: date,
        actor_id: UUID,
        **kwargs,
    ) -> MaterialLedgerEntry:
        return self.post(
            TransactionType.GOODS_ISSUE, material_id, plant_id, quantity,
            Direction.OUT, None, posting_date, actor_id, **kwargs,
        )

    def post_production_consumption(
        self,
        order_id: str,
        material_id: str,
        plant_id: str,
        quantity: Decimal,
        posting_date: date,
        actor_id: UUID,
        standard_quantity: Decimal | None = None,
        **kwargs,
    ) -> MaterialLedgerEntry:
        return self.post(
            TransactionType.PRODUCTION_CONSUMPTION, material_id, plant_id, quantity,
            Direction.OUT, None, posting_date, actor_id,
            standard_quantity=standard_quantity, consuming_order_id=order_id, **kwargs,
        )

    def post_production_receipt(
        self,
        order_id: str,
        material_id: str,
        plant_id: str,
        quantity: Decimal,
        unit_price: UnitPrices,
        posting_date: date,
        actor_id: UUID,
        **kwargs,
    ) -> MaterialLedgerEntry:
        return self.post(
            TransactionType.PRODUCTION_RECEIPT, material_id, plant_id, quantity,
            Direction.IN, unit_price, posting_date, actor_id,
            consuming_order_id=order_id, **kwargs,
        )

    def post_invoice(
        self,
        material_id: str,
        plant_id: str,
        quantity: Decimal,
        invoice_price: Money,
        posting_date: date,
        actor_id: UUID,
        **kwargs,
    ) -> MaterialLedgerEntry:
        """Value-only entry for (invoice price - current price) x quantity."""
        return self.post(
            TransactionType.INVOICE_RECEIPT, material_id, plant_id, _ZERO,
            Direction.NONE, invoice_price, posting_date, actor_id,
            invoice_quantity=quantity, **kwargs,
        )

    def post_landed_cost(
        self,
        material_id: str,
        plant_id: str,
        amount: Money,
        posting_date: date,
        actor_id: UUID,
        **kwargs,
    ) -> MaterialLedgerEntry:
        """Capitalize an allocated landed cost into stock value."""
        return self.post(
            TransactionType.LANDED_COST, material_id, plant_id, _ZERO,
            Direction.NONE, None, posting_date, actor_id,
            value_adjustment=amount, **kwargs,
        )

    # =========================================================================
    # Revaluation and fixed prices
    # =========================================================================

    def revalue(
        self,
        material_id: str,
        plant_id: str,
        new_price: Money,
        posting_date: date,
        actor_id: UUID,
        view: str | None = None,
        reference: str | None = None,
        fix_price: bool = False,
    ) -> MaterialLedgerEntry:
        """Set a new price in one view and book the stock value difference."""
        self._check_currency(new_price)
        view = view or self._primary_view
        method = self._method_for(view)

        with LogContext.bind(material_id=material_id, plant_id=plant_id):
            with self._locks.hold(material_id, plant_id):
                with transaction_boundary(
                    self._session, self._auto_commit, logger, "material_revaluation",
                    material_id=material_id, plant_id=plant_id, view=view,
                ):
                    period = self._periods.validate_posting_date(plant_id, posting_date)
                    balance = self._lock_balance(material_id, plant_id, actor_id)
                    price_row = self._price_row(material_id, plant_id, view, method, actor_id)
                    result = self._engine.revalue(
                        position=self._position(price_row, balance),
                        new_price=new_price.amount,
                    )
                    self._apply_result(price_row, result, actor_id)
                    if fix_price:
                        price_row.is_fixed = True

                    row = self._new_entry(
                        TransactionType.REVALUATION, material_id, plant_id, _ZERO,
                        Direction.NONE, posting_date, period.fiscal_year, period.period,
                        actor_id,
                        actual_unit_price=result.position.unit_price,
                        price_variance=_ZERO,
                        value_adjustment=result.amount.amount,
                        reference=reference,
                    )
                    row.valuations.append(
                        self._valuation_row(view, method, result.position.unit_price, result.amount, actor_id)
                    )
                    self._flush(material_id, plant_id)
                    entry = row.to_dto()
                    instructions = self._instructions(
                        entry, [(view, method, result)]
                    )
            self._publish(instructions)

        logger.info(
            "material_revalued",
            extra={
                "entry_id": str(entry.id),
                "view": view,
                "old_price": str(result.previous_price),
                "new_price": str(result.position.unit_price),
                "fixed": fix_price,
            },
        )
        return entry

    def set_fixed_price(
        self,
        material_id: str,
        plant_id: str,
        price: Money,
        posting_date: date,
        actor_id: UUID,
        view: str | None = None,
    ) -> MaterialLedgerEntry:
        """Fix a moving-average price manually; it then behaves like a standard."""
        return self.revalue(
            material_id, plant_id, price, posting_date, actor_id,
            view=view, reference="fixed price", fix_price=True,
        )

    def release_fixed_price(
        self,
        material_id: str,
        plant_id: str,
        actor_id: UUID,
        view: str | None = None,
    ) -> MaterialPriceInfo:
        view = view or self._primary_view
        method = self._method_for(view)
        with self._locks.hold(material_id, plant_id):
            with transaction_boundary(
                self._session, self._auto_commit, logger, "material_fixed_price_release",
                material_id=material_id, plant_id=plant_id,
            ):
                self._lock_balance(material_id, plant_id, actor_id)
                price_row = self._price_row(material_id, plant_id, view, method, actor_id)
                price_row.is_fixed = False
                price_row.updated_by_id = actor_id
                self._flush(material_id, plant_id)
                info = price_row.to_dto()

        logger.info(
            "material_fixed_price_released",
            extra={"material_id": material_id, "plant_id": plant_id, "view": view},
        )
        return info

    # =========================================================================
    # Reversal
    # =========================================================================

    def reverse(
        self,
        entry_id: UUID,
        posting_date: date,
        actor_id: UUID,
        reference: str | None = None,
        allow_backorder: bool | None = None,
    ) -> MaterialLedgerEntry:
        """
        Append the mirror of an entry.

        The reversal carries the original's quantity, prices and valuation
        amounts with the opposite effect on stock.  Each entry can be
        reversed once; reversals themselves cannot be reversed.
        """
        original = self._session.get(MaterialLedgerEntryModel, entry_id)
        if original is None:
            raise EntryNotFoundError(str(entry_id))
        if original.transaction_type == TransactionType.REVERSAL.value:
            raise ValidationError(f"Ledger entry {entry_id} is itself a reversal")

        material_id, plant_id = original.material_id, original.plant_id
        with LogContext.bind(material_id=material_id, plant_id=plant_id):
            with self._locks.hold(material_id, plant_id):
                with transaction_boundary(
                    self._session, self._auto_commit, logger, "material_reversal",
                    entry_id=entry_id,
                ):
                    entry, instructions = self._reverse_locked(
                        original, posting_date, actor_id, reference, allow_backorder
                    )
            self._publish(instructions)

        logger.info(
            "material_entry_reversed",
            extra={"entry_id": str(entry_id), "reversal_entry_id": str(entry.id)},
        )
        return entry

    # =========================================================================
    # Queries
    # =========================================================================

    def get_entry(self, entry_id: UUID) -> MaterialLedgerEntry:
        row = self._session.get(MaterialLedgerEntryModel, entry_id)
        if row is None:
            raise EntryNotFoundError(str(entry_id))
        return row.to_dto()

    def get_price(
        self,
        material_id: str,
        plant_id: str,
        view: str | None = None,
        price_type: PriceMethod | None = None,
    ) -> MaterialPriceInfo | None:
        view = view or self._primary_view
        price_type = price_type or self._method_for(view)
        row = self._find_price_row(material_id, plant_id, view, price_type)
        return row.to_dto() if row is not None else None

    def current_price(self, material_id: str, plant_id: str) -> Money | None:
        """Primary-view price, or None before the first receipt."""
        info = self.get_price(material_id, plant_id)
        if info is None or info.unit_price == 0:
            return None
        return Money.of(info.unit_price, info.currency)

    def get_balance(self, material_id: str, plant_id: str) -> BalanceInfo:
        row = self._find_balance(material_id, plant_id)
        if row is None:
            return BalanceInfo(material_id, plant_id, _ZERO)
        return BalanceInfo(material_id, plant_id, row.quantity_on_hand, row.version)

    def entries_for_period(
        self,
        plant_id: str,
        fiscal_year: int,
        fiscal_period: int,
        material_id: str | None = None,
    ) -> list[MaterialLedgerEntry]:
        return [
            row.to_dto()
            for row in self._period_rows(plant_id, fiscal_year, fiscal_period, material_id)
        ]

    def actual_cost_records(
        self, plant_id: str, fiscal_year: int, fiscal_period: int
    ) -> list[ActualCostRecord]:
        rows = self._session.execute(
            select(ActualCostRecordModel)
            .where(
                ActualCostRecordModel.plant_id == plant_id,
                ActualCostRecordModel.fiscal_year == fiscal_year,
                ActualCostRecordModel.fiscal_period == fiscal_period,
            )
            .order_by(ActualCostRecordModel.material_id)
        ).scalars()
        return [r.to_dto() for r in rows]

    # =========================================================================
    # Period actual cost
    # =========================================================================

    def record_actual_costs(
        self,
        plant_id: str,
        fiscal_year: int,
        fiscal_period: int,
        actor_id: UUID,
        run_id: UUID | None = None,
    ) -> list[ActualCostRecord]:
        """
        Derive each material's actual cost for a period.

        actual = (sum(receipt qty x posted price) + value adjustments)
                 / sum(receipt qty)

        Writes one ActualCostRecord per material, the ACTUAL price of every
        actual-cost view and an ACTUAL valuation row for each of the
        period's entries.  Materials already recorded are left as they are.
        """
        instructions: list[PriceUpdateInstruction] = []
        with transaction_boundary(
            self._session, self._auto_commit, logger, "actual_cost_recording",
            plant_id=plant_id, fiscal_year=fiscal_year, fiscal_period=fiscal_period,
        ):
            rows = list(self._period_rows(plant_id, fiscal_year, fiscal_period))
            originals = self._reversal_originals(rows)
            by_material: dict[str, list[MaterialLedgerEntryModel]] = defaultdict(list)
            for row in rows:
                by_material[row.material_id].append(row)

            records = []
            for material_id in sorted(by_material):
                record = self._record_actual_cost(
                    material_id, plant_id, fiscal_year, fiscal_period,
                    by_material[material_id], originals, actor_id, run_id, instructions,
                )
                if record is not None:
                    records.append(record)
            self._session.flush()
        self._publish(instructions)

        logger.info(
            "actual_costs_recorded",
            extra={
                "plant_id": plant_id,
                "fiscal_year": fiscal_year,
                "fiscal_period": fiscal_period,
                "materials": len(records),
            },
        )
        return records

    # =========================================================================
    # Internals: posting
    # =========================================================================

    def _validate_posting(
        self,
        transaction_type: TransactionType,
        material_id: str,
        quantity: Decimal,
        direction: Direction,
        unit_prices: UnitPrices | None,
        value_adjustment: Money | None,
        invoice_quantity: Decimal | None,
    ) -> None:
        if transaction_type in (TransactionType.REVERSAL, TransactionType.REVALUATION):
            raise ValidationError(
                f"{transaction_type.value} entries are created by reverse() / revalue()"
            )
        if direction is Direction.NONE:
            if transaction_type not in ADJUSTMENT_TYPES:
                raise ValidationError(
                    f"{transaction_type.value} cannot be posted as a value-only entry"
                )
            if value_adjustment is None and (invoice_quantity is None or unit_prices is None):
                raise ValidationError(
                    "Value-only entries need a value_adjustment or an invoice quantity and price"
                )
            if invoice_quantity is not None and invoice_quantity <= 0:
                raise InvalidQuantityError(material_id, invoice_quantity)
        else:
            if quantity <= 0:
                raise InvalidQuantityError(material_id, quantity)
            if direction is Direction.IN and unit_prices is None:
                raise ValidationError(f"Receipt of {material_id} has no unit price")
        if value_adjustment is not None:
            self._check_currency(value_adjustment)
        if isinstance(unit_prices, Money):
            self._check_currency(unit_prices)
        elif unit_prices is not None:
            for price in unit_prices.values():
                self._check_currency(price)

    def _post_locked(
        self,
        transaction_type: TransactionType,
        material_id: str,
        plant_id: str,
        quantity: Decimal,
        direction: Direction,
        unit_prices: UnitPrices | None,
        posting_date: date,
        actor_id: UUID,
        *,
        value_adjustment: Money | None,
        invoice_quantity: Decimal | None,
        standard_quantity: Decimal | None,
        consuming_order_id: str | None,
        event_id: UUID | None,
        reference: str | None,
        allow_backorder: bool | None,
    ) -> tuple[MaterialLedgerEntry, list[PriceUpdateInstruction]]:
        if event_id is not None:
            existing = self._session.execute(
                select(MaterialLedgerEntryModel).where(
                    MaterialLedgerEntryModel.event_id == event_id
                )
            ).scalar_one_or_none()
            if existing is not None:
                logger.info(
                    "material_posting_duplicate_event",
                    extra={"event_id": str(event_id), "entry_id": str(existing.id)},
                )
                return existing.to_dto(), []

        period = self._periods.validate_posting_date(plant_id, posting_date)
        balance = self._lock_balance(material_id, plant_id, actor_id)

        standard = self._standards.get_standard_unit_cost(material_id, plant_id)
        standard_price = standard.amount if standard is not None else None
        if (
            standard_price is None
            and self._config.require_standard_price
            and any(m is PriceMethod.STANDARD for _, m in self._posting_views)
        ):
            raise MissingStandardCostError(material_id, plant_id, context=transaction_type.value)

        if direction is Direction.OUT:
            backorder = self._config.allow_backorder if allow_backorder is None else allow_backorder
            if balance.quantity_on_hand - quantity < 0 and not backorder:
                logger.warning(
                    "material_posting_negative_balance",
                    extra={
                        "material_id": material_id,
                        "on_hand": str(balance.quantity_on_hand),
                        "requested": str(quantity),
                    },
                )
                raise NegativeBalanceError(
                    material_id, plant_id, str(balance.quantity_on_hand), str(quantity)
                )

        if direction is Direction.NONE and value_adjustment is None:
            primary_row = self._price_row(
                material_id, plant_id, self._primary_view,
                self._method_for(self._primary_view), actor_id,
            )
            invoice_price = self._price_for(unit_prices, self._primary_view)
            value_adjustment = Money.of(
                (invoice_price.amount - primary_row.unit_price) * invoice_quantity,
                self._currency,
            ).round()

        results: list[tuple[str, PriceMethod, ValuationResult]] = []
        for view, method in self._posting_views:
            price_row = self._price_row(material_id, plant_id, view, method, actor_id)
            position = self._position(price_row, balance)
            if direction is Direction.IN:
                result = self._engine.receipt(
                    method=method,
                    position=position,
                    quantity=quantity,
                    price=self._price_for(unit_prices, view),
                    standard_price=standard_price,
                )
            elif direction is Direction.OUT:
                result = self._engine.issue(
                    method=method,
                    position=position,
                    quantity=quantity,
                    standard_price=standard_price,
                )
            else:
                result = self._engine.value_adjustment(
                    method=method, position=position, amount=value_adjustment
                )
            self._apply_result(price_row, result, actor_id)
            results.append((view, method, result))

        primary = next(r for v, _, r in results if v == self._primary_view)
        if direction is Direction.IN:
            actual_price = self._price_for(unit_prices, self._primary_view).amount
            price_variance = (
                Money.of((actual_price - standard_price) * quantity, self._currency).round().amount
                if standard_price is not None else _ZERO
            )
            adjustment = _ZERO
        elif direction is Direction.OUT:
            actual_price = primary.unit_price
            price_variance = _ZERO
            adjustment = _ZERO
        else:
            actual_price = (
                self._price_for(unit_prices, self._primary_view).amount
                if unit_prices is not None else primary.position.unit_price
            )
            adjustment = value_adjustment.amount
            price_variance = adjustment if standard_price is not None else _ZERO

        balance.quantity_on_hand = balance.quantity_on_hand + (
            quantity if direction is Direction.IN
            else -quantity if direction is Direction.OUT
            else _ZERO
        )
        balance.updated_by_id = actor_id

        row = self._new_entry(
            transaction_type, material_id, plant_id, quantity, direction,
            posting_date, period.fiscal_year, period.period, actor_id,
            actual_unit_price=actual_price,
            price_variance=price_variance,
            value_adjustment=adjustment,
            standard_price=standard_price,
            standard_quantity=standard_quantity,
            consuming_order_id=consuming_order_id,
            event_id=event_id,
            reference=reference,
        )
        for view, method, result in results:
            unit_price = result.unit_price if direction is not Direction.NONE else result.position.unit_price
            row.valuations.append(
                self._valuation_row(view, method, unit_price, result.amount, actor_id)
            )
        self._flush(material_id, plant_id)
        entry = row.to_dto()
        return entry, self._instructions(entry, results)

    def _reverse_locked(
        self,
        original: MaterialLedgerEntryModel,
        posting_date: date,
        actor_id: UUID,
        reference: str | None,
        allow_backorder: bool | None,
    ) -> tuple[MaterialLedgerEntry, list[PriceUpdateInstruction]]:
        existing = self._session.execute(
            select(MaterialLedgerEntryModel).where(
                MaterialLedgerEntryModel.reversal_of_id == original.id
            )
        ).scalar_one_or_none()
        if existing is not None:
            raise EntryAlreadyReversedError(str(original.id), str(existing.id))

        material_id, plant_id = original.material_id, original.plant_id
        period = self._periods.validate_posting_date(plant_id, posting_date)
        balance = self._lock_balance(material_id, plant_id, actor_id)

        direction = Direction(original.direction).opposite
        quantity_delta = (
            original.quantity if direction is Direction.IN
            else -original.quantity if direction is Direction.OUT
            else _ZERO
        )
        backorder = self._config.allow_backorder if allow_backorder is None else allow_backorder
        if balance.quantity_on_hand + quantity_delta < 0 and not backorder:
            raise NegativeBalanceError(
                material_id, plant_id, str(balance.quantity_on_hand), str(original.quantity)
            )

        originals_by_view = {
            (v.view, v.price_type): v for v in original.valuations
        }
        results: list[tuple[str, PriceMethod, ValuationResult]] = []
        mirrored = []
        for view, method in self._posting_views:
            source = originals_by_view.get((view, method.value))
            if source is None:
                continue
            price_row = self._price_row(material_id, plant_id, view, method, actor_id)
            result = self._engine.reverse(
                method=method,
                position=self._position(price_row, balance),
                quantity=quantity_delta,
                amount=Money.of(-source.amount, self._currency),
            )
            self._apply_result(price_row, result, actor_id)
            results.append((view, method, result))
            mirrored.append((view, method, source.unit_price, -source.amount))

        balance.quantity_on_hand = balance.quantity_on_hand + quantity_delta
        balance.updated_by_id = actor_id

        row = self._new_entry(
            TransactionType.REVERSAL, material_id, plant_id, original.quantity, direction,
            posting_date, period.fiscal_year, period.period, actor_id,
            actual_unit_price=original.actual_unit_price,
            price_variance=-original.price_variance,
            value_adjustment=-original.value_adjustment,
            standard_price=original.standard_price,
            standard_quantity=original.standard_quantity,
            consuming_order_id=original.consuming_order_id,
            reversal_of_id=original.id,
            reference=reference or f"reversal of #{original.sequence_id}",
        )
        for view, method, unit_price, amount in mirrored:
            row.valuations.append(
                self._valuation_row(
                    view, method, unit_price, Money.of(amount, self._currency), actor_id
                )
            )
        try:
            self._flush(material_id, plant_id)
        except IntegrityError as exc:
            raise ConcurrencyConflictError("MaterialLedgerEntry", str(original.id)) from exc
        entry = row.to_dto()
        return entry, self._instructions(entry, results)

    def _new_entry(
        self,
        transaction_type: TransactionType,
        material_id: str,
        plant_id: str,
        quantity: Decimal,
        direction: Direction,
        posting_date: date,
        fiscal_year: int,
        fiscal_period: int,
        actor_id: UUID,
        *,
        actual_unit_price: Decimal,
        price_variance: Decimal,
        value_adjustment: Decimal,
        standard_price: Decimal | None = None,
        standard_quantity: Decimal | None = None,
        consuming_order_id: str | None = None,
        event_id: UUID | None = None,
        reversal_of_id: UUID | None = None,
        reference: str | None = None,
    ) -> MaterialLedgerEntryModel:
        row = MaterialLedgerEntryModel(
            sequence_id=self._sequences.next_value(SequenceService.MATERIAL_LEDGER),
            material_id=material_id,
            plant_id=plant_id,
            transaction_type=transaction_type.value,
            direction=direction.value,
            quantity=quantity,
            posting_date=posting_date,
            fiscal_year=fiscal_year,
            fiscal_period=fiscal_period,
            currency=self._currency,
            actual_unit_price=actual_unit_price,
            standard_price=standard_price,
            standard_quantity=standard_quantity,
            price_variance=price_variance,
            value_adjustment=value_adjustment,
            consuming_order_id=consuming_order_id,
            event_id=event_id,
            reversal_of_id=reversal_of_id,
            reference=reference,
            created_by_id=actor_id,
        )
        self._session.add(row)
        return row

    @staticmethod
    def _valuation_row(
        view: str, method: PriceMethod, unit_price: Decimal, amount: Money, actor_id: UUID
    ) -> MaterialLedgerValuationModel:
        return MaterialLedgerValuationModel(
            view=view,
            price_type=method.value,
            unit_price=unit_price,
            amount=amount.amount,
            created_by_id=actor_id,
        )

    def _flush(self, material_id: str, plant_id: str) -> None:
        with stale_data_as_conflict("MaterialPrice", f"{material_id}@{plant_id}"):
            self._session.flush()

    # =========================================================================
    # Internals: rows and positions
    # =========================================================================

    def _find_balance(self, material_id: str, plant_id: str) -> MaterialBalanceModel | None:
        return self._session.execute(
            select(MaterialBalanceModel).where(
                MaterialBalanceModel.material_id == material_id,
                MaterialBalanceModel.plant_id == plant_id,
            )
        ).scalar_one_or_none()

    def _lock_balance(
        self, material_id: str, plant_id: str, actor_id: UUID
    ) -> MaterialBalanceModel:
        """Read the balance row FOR UPDATE, creating it on first movement."""
        row = self._session.execute(
            select(MaterialBalanceModel)
            .where(
                MaterialBalanceModel.material_id == material_id,
                MaterialBalanceModel.plant_id == plant_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            row = MaterialBalanceModel(
                material_id=material_id,
                plant_id=plant_id,
                quantity_on_hand=_ZERO,
                created_by_id=actor_id,
            )
            self._session.add(row)
            try:
                self._session.flush()
            except IntegrityError as exc:
                raise ConcurrencyConflictError(
                    "MaterialBalance", f"{material_id}@{plant_id}"
                ) from exc
        return row

    def _find_price_row(
        self, material_id: str, plant_id: str, view: str, price_type: PriceMethod
    ) -> MaterialPriceModel | None:
        return self._session.execute(
            select(MaterialPriceModel).where(
                MaterialPriceModel.material_id == material_id,
                MaterialPriceModel.plant_id == plant_id,
                MaterialPriceModel.view == view,
                MaterialPriceModel.price_type == price_type.value,
            )
        ).scalar_one_or_none()

    def _price_row(
        self,
        material_id: str,
        plant_id: str,
        view: str,
        price_type: PriceMethod,
        actor_id: UUID,
    ) -> MaterialPriceModel:
        row = self._find_price_row(material_id, plant_id, view, price_type)
        if row is None:
            row = MaterialPriceModel(
                material_id=material_id,
                plant_id=plant_id,
                view=view,
                price_type=price_type.value,
                unit_price=_ZERO,
                stock_value=_ZERO,
                currency=self._currency,
                is_fixed=False,
                created_by_id=actor_id,
            )
            self._session.add(row)
        return row

    def _position(
        self, price_row: MaterialPriceModel, balance: MaterialBalanceModel
    ) -> StockPosition:
        return StockPosition(
            quantity=balance.quantity_on_hand,
            unit_price=price_row.unit_price,
            stock_value=Money.of(price_row.stock_value, self._currency),
            is_fixed=price_row.is_fixed,
        )

    @staticmethod
    def _apply_result(
        price_row: MaterialPriceModel, result: ValuationResult, actor_id: UUID
    ) -> None:
        price_row.unit_price = result.position.unit_price
        price_row.stock_value = result.position.stock_value.amount
        price_row.updated_by_id = actor_id

    def _price_for(self, unit_prices: UnitPrices | None, view: str) -> Money:
        if isinstance(unit_prices, Money):
            return unit_prices
        if unit_prices is None:
            raise ValidationError(f"No unit price given for view {view}")
        if view in unit_prices:
            return unit_prices[view]
        return unit_prices[self._primary_view]

    def _method_for(self, view: str) -> PriceMethod:
        for v in self._config.valuation_views:
            if v.view == view:
                return PriceMethod(v.price_method)
        raise ValidationError(f"Valuation view {view} is not configured")

    def _check_currency(self, amount: Money) -> None:
        if amount.currency.code != self._currency:
            raise CurrencyMismatchError(amount.currency.code, self._currency)

    def _instructions(
        self,
        entry: MaterialLedgerEntry,
        results: list[tuple[str, PriceMethod, ValuationResult]],
    ) -> list[PriceUpdateInstruction]:
        return [
            PriceUpdateInstruction(
                instruction_id=deterministic_id("price_update", entry.id, view),
                material_id=entry.material_id,
                plant_id=entry.plant_id,
                view=view,
                price_type=method.value,
                old_price=result.previous_price,
                new_price=result.position.unit_price,
                currency=entry.currency,
                effective_date=entry.posting_date,
                source=entry.transaction_type.value,
                source_id=entry.id,
            )
            for view, method, result in results
            if result.price_changed
        ]

    def _publish(self, instructions: list[PriceUpdateInstruction]) -> None:
        if self._publisher is None:
            return
        for instruction in instructions:
            self._publisher.publish(PRICE_UPDATE_TOPIC, instruction)

    # =========================================================================
    # Internals: actual cost
    # =========================================================================

    def _period_rows(
        self,
        plant_id: str,
        fiscal_year: int,
        fiscal_period: int,
        material_id: str | None = None,
    ):
        stmt = select(MaterialLedgerEntryModel).where(
            MaterialLedgerEntryModel.plant_id == plant_id,
            MaterialLedgerEntryModel.fiscal_year == fiscal_year,
            MaterialLedgerEntryModel.fiscal_period == fiscal_period,
        )
        if material_id is not None:
            stmt = stmt.where(MaterialLedgerEntryModel.material_id == material_id)
        return self._session.execute(
            stmt.order_by(MaterialLedgerEntryModel.sequence_id)
        ).scalars()

    def _reversal_originals(
        self, rows: list[MaterialLedgerEntryModel]
    ) -> dict[UUID, MaterialLedgerEntryModel]:
        ids = {r.reversal_of_id for r in rows if r.reversal_of_id is not None}
        if not ids:
            return {}
        originals = self._session.execute(
            select(MaterialLedgerEntryModel).where(MaterialLedgerEntryModel.id.in_(ids))
        ).scalars()
        return {o.id: o for o in originals}

    def _record_actual_cost(
        self,
        material_id: str,
        plant_id: str,
        fiscal_year: int,
        fiscal_period: int,
        rows: list[MaterialLedgerEntryModel],
        originals: dict[UUID, MaterialLedgerEntryModel],
        actor_id: UUID,
        run_id: UUID | None,
        instructions: list[PriceUpdateInstruction],
    ) -> ActualCostRecord | None:
        existing = self._session.execute(
            select(ActualCostRecordModel).where(
                ActualCostRecordModel.material_id == material_id,
                ActualCostRecordModel.plant_id == plant_id,
                ActualCostRecordModel.fiscal_year == fiscal_year,
                ActualCostRecordModel.fiscal_period == fiscal_period,
            )
        ).scalar_one_or_none()
        if existing is not None:
            return existing.to_dto()

        receipt_qty = receipt_value = adjustments = consumption = _ZERO
        for row in rows:
            kind = TransactionType(row.transaction_type)
            sign = 1
            if kind is TransactionType.REVERSAL:
                kind = TransactionType(originals[row.reversal_of_id].transaction_type)
                sign = -1
            if kind in RECEIPT_TYPES:
                receipt_qty += sign * row.quantity
                receipt_value += sign * row.quantity * row.actual_unit_price
            elif kind in ADJUSTMENT_TYPES:
                adjustments += row.value_adjustment
            elif kind in ISSUE_TYPES:
                consumption += sign * row.quantity

        receipt_money = Money.of(receipt_value, self._currency).round()
        actual = self._engine.actual_unit_cost(
            receipt_qty, receipt_money, Money.of(adjustments, self._currency)
        )
        if actual is None:
            carried = self._find_price_row(
                material_id, plant_id, self._primary_view, self._method_for(self._primary_view)
            )
            if carried is None:
                logger.warning(
                    "actual_cost_no_basis",
                    extra={"material_id": material_id, "plant_id": plant_id},
                )
                return None
            actual = carried.unit_price

        standard = self._standards.get_standard_unit_cost(material_id, plant_id)
        record = ActualCostRecordModel(
            material_id=material_id,
            plant_id=plant_id,
            fiscal_year=fiscal_year,
            fiscal_period=fiscal_period,
            currency=self._currency,
            receipt_quantity=receipt_qty,
            receipt_value=receipt_money.amount,
            value_adjustments=adjustments,
            consumption_quantity=consumption,
            actual_unit_cost=actual,
            standard_unit_cost=standard.amount if standard is not None else None,
            run_id=run_id,
            created_by_id=actor_id,
        )
        self._session.add(record)

        balance = self._find_balance(material_id, plant_id)
        on_hand = balance.quantity_on_hand if balance is not None else _ZERO
        for view in self._actual_views:
            self._append_actual_rows(view, rows, actual, actor_id)
            price_row = self._price_row(material_id, plant_id, view, PriceMethod.ACTUAL, actor_id)
            old_price = price_row.unit_price
            price_row.unit_price = actual
            price_row.stock_value = Money.of(on_hand * actual, self._currency).round().amount
            price_row.updated_by_id = actor_id
            if old_price != actual:
                instructions.append(
                    PriceUpdateInstruction(
                        instruction_id=deterministic_id(
                            "actual_price", material_id, plant_id, view, fiscal_year, fiscal_period
                        ),
                        material_id=material_id,
                        plant_id=plant_id,
                        view=view,
                        price_type=PriceMethod.ACTUAL.value,
                        old_price=old_price,
                        new_price=actual,
                        currency=self._currency,
                        effective_date=max(r.posting_date for r in rows),
                        source="period_close",
                        source_id=run_id,
                    )
                )

        logger.debug(
            "actual_cost_calculated",
            extra={
                "material_id": material_id,
                "receipt_quantity": str(receipt_qty),
                "actual_unit_cost": str(actual),
            },
        )
        return record.to_dto()

    def _append_actual_rows(
        self,
        view: str,
        rows: list[MaterialLedgerEntryModel],
        actual: Decimal,
        actor_id: UUID,
    ) -> None:
        entry_ids = [r.id for r in rows]
        done = set(
            self._session.execute(
                select(MaterialLedgerValuationModel.entry_id).where(
                    MaterialLedgerValuationModel.entry_id.in_(entry_ids),
                    MaterialLedgerValuationModel.view == view,
                    MaterialLedgerValuationModel.price_type == PriceMethod.ACTUAL.value,
                )
            ).scalars()
        )
        for row in rows:
            if row.id in done:
                continue
            if row.direction == Direction.NONE.value:
                amount = row.value_adjustment
            else:
                signed = row.quantity if row.direction == Direction.IN.value else -row.quantity
                amount = Money.of(signed * actual, self._currency).round().amount
            row.valuations.append(
                MaterialLedgerValuationModel(
                    view=view,
                    price_type=PriceMethod.ACTUAL.value,
                    unit_price=actual,
                    amount=amount,
                    created_by_id=actor_id,
                )
            )
