"""
Landed Cost Service (``costing_modules.landed_cost.service``).

Responsibility
--------------
Captures freight, duty, insurance and handling charges against an inbound
document, splits every charge over the document's lines and, on posting,
capitalizes the allocated amounts into the affected materials' valuation.

Architecture
------------
Layer: **Modules** -- stateful orchestration over
``costing_engines.allocation.LandedCostAllocationEngine``.

Lifecycle: DRAFT -> CALCULATED -> POSTED.  Lines and charges are only
accepted on a DRAFT document; ``calculate`` writes one allocation row per
charge and line; ``post`` is terminal.

Invariants
----------
- Per charge, allocations sum exactly to the charge amount.
- total_landed_cost = base_unit_price * quantity + total_allocated_cost.
- A POSTED document, its lines, charges and allocations never change.
- Posting publishes one PriceUpdateInstruction per material, after commit.

Failure Modes
-------------
- DocumentNotFoundError, InvalidStatusTransitionError.
- EmptyDocumentError when calculating a document without lines.
- ZeroBasisError, ManualAllocationMismatchError from the engine.
- PeriodLockedError from the valuation store when ledger posting is on.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from costing_config import CostingConfig, get_active_config
from costing_engines.allocation import (
    AllocationBasis,
    AllocationTarget,
    LandedCostAllocationEngine,
)
from costing_kernel.db.versioning import check_expected_version, stale_data_as_conflict
from costing_kernel.domain.clock import Clock, SystemClock
from costing_kernel.domain.extensions import ExtensionSchemaRegistry
from costing_kernel.domain.values import Money, round_price
from costing_kernel.exceptions import (
    CurrencyMismatchError,
    DocumentNotFoundError,
    EmptyDocumentError,
    InvalidQuantityError,
    InvalidStatusTransitionError,
    ValidationError,
)
from costing_kernel.logging_config import LogContext, get_logger
from costing_kernel.services.sequence_service import SequenceService
from costing_kernel.utils.idempotency import deterministic_id
from costing_modules._service_helpers import (
    build_extension_registry,
    transaction_boundary,
)
from costing_modules.landed_cost.models import (
    DocumentStatus,
    LandedCostDocument,
    LandedCostType,
)
from costing_modules.landed_cost.orm import (
    AllocatedLandedCostModel,
    LandedCostChargeModel,
    LandedCostDocumentModel,
    LandedCostLineModel,
)
from costing_modules.ledger.models import (
    PRICE_UPDATE_TOPIC,
    MessagePublisher,
    PriceUpdateInstruction,
)
from costing_modules.ledger.service import MaterialLedgerService

logger = get_logger("modules.landed_cost.service")

ENTITY_TYPE = "LandedCostDocument"
DOCUMENT_SEQUENCE = "landed_cost_document"


class LandedCostService:
    """
    Landed cost documents.

    With ``post_to_ledger=True`` posting also books one LANDED_COST entry
    per material in the valuation store, inside the same transaction.
    """

    def __init__(
        self,
        session: Session,
        config: CostingConfig | None = None,
        clock: Clock | None = None,
        publisher: MessagePublisher | None = None,
        post_to_ledger: bool = False,
        extensions: ExtensionSchemaRegistry | None = None,
        auto_commit: bool = True,
    ):
        self._session = session
        self._config = config or get_active_config()
        self._clock = clock or SystemClock()
        self._publisher = publisher
        self._engine = LandedCostAllocationEngine()
        self._sequences = SequenceService(session)
        self._extensions = extensions or build_extension_registry(self._config)
        self._auto_commit = auto_commit
        self._ledger = (
            MaterialLedgerService(
                session, config=self._config, clock=self._clock, auto_commit=False
            )
            if post_to_ledger
            else None
        )

    # =========================================================================
    # Document capture
    # =========================================================================

    def create_document(
        self,
        plant_id: str,
        actor_id: UUID,
        vendor_reference: str | None = None,
        currency: str | None = None,
        tenant_id: str | None = None,
        extension_attributes: dict[str, Any] | None = None,
    ) -> LandedCostDocument:
        currency = currency or self._config.currency
        with transaction_boundary(
            self._session, self._auto_commit, logger, "landed_cost_document_create",
            plant_id=plant_id,
        ):
            attributes = self._extensions.validate(
                tenant_id or "*", ENTITY_TYPE, extension_attributes
            )
            number = self._sequences.next_value(DOCUMENT_SEQUENCE)
            row = LandedCostDocumentModel(
                document_number=f"LC-{number:06d}",
                plant_id=plant_id,
                currency=currency,
                status=DocumentStatus.DRAFT.value,
                vendor_reference=vendor_reference,
                tenant_id=tenant_id,
                extension_attributes=attributes,
                created_by_id=actor_id,
            )
            self._session.add(row)
            self._session.flush()
            dto = row.to_dto()

        logger.info(
            "landed_cost_document_created",
            extra={
                "document_id": str(dto.id),
                "document_number": dto.document_number,
                "plant_id": plant_id,
            },
        )
        return dto

    def add_line(
        self,
        document_id: UUID,
        material_id: str,
        quantity: Decimal,
        base_unit_price: Money,
        actor_id: UUID,
        weight: Decimal | None = None,
        volume: Decimal | None = None,
    ) -> LandedCostDocument:
        with transaction_boundary(
            self._session, self._auto_commit, logger, "landed_cost_line_add",
            document_id=document_id, material_id=material_id,
        ):
            row = self._get_orm(document_id)
            self._require_draft(row, "add_line")
            if quantity <= 0:
                raise InvalidQuantityError(material_id, quantity)
            self._check_currency(row, base_unit_price)
            for label, measure in (("weight", weight), ("volume", volume)):
                if measure is not None and measure < 0:
                    raise ValidationError(f"Negative {label} on landed cost line {material_id}")

            row.lines.append(
                LandedCostLineModel(
                    line_number=len(row.lines) + 1,
                    material_id=material_id,
                    quantity=quantity,
                    base_unit_price=base_unit_price.amount,
                    weight=weight,
                    volume=volume,
                    total_allocated_cost=Decimal("0"),
                    total_landed_cost=(base_unit_price * quantity).round().amount,
                    landed_cost_per_unit=base_unit_price.amount,
                    created_by_id=actor_id,
                )
            )
            self._session.flush()
            dto = row.to_dto()

        logger.info(
            "landed_cost_line_added",
            extra={
                "document_id": str(document_id),
                "material_id": material_id,
                "quantity": str(quantity),
            },
        )
        return dto

    def add_charge(
        self,
        document_id: UUID,
        cost_type: LandedCostType,
        amount: Money,
        basis: AllocationBasis,
        actor_id: UUID,
        manual_amounts: dict[int, Money] | None = None,
    ) -> LandedCostDocument:
        """
        Add a charge to a DRAFT document.

        ``manual_amounts`` maps line numbers to amounts and is only used with
        the MANUAL basis; it is checked against the charge in calculate().
        """
        with transaction_boundary(
            self._session, self._auto_commit, logger, "landed_cost_charge_add",
            document_id=document_id, cost_type=cost_type.value,
        ):
            row = self._get_orm(document_id)
            self._require_draft(row, "add_charge")
            self._check_currency(row, amount)
            if amount.is_zero:
                raise ValidationError(f"Zero {cost_type.value} charge on {row.document_number}")
            if manual_amounts and basis is not AllocationBasis.MANUAL:
                raise ValidationError(
                    f"Manual amounts given for a {basis.value} {cost_type.value} charge"
                )
            for money in (manual_amounts or {}).values():
                self._check_currency(row, money)

            row.charges.append(
                LandedCostChargeModel(
                    charge_number=len(row.charges) + 1,
                    cost_type=cost_type.value,
                    amount=amount.round().amount,
                    basis=basis.value,
                    manual_amounts={
                        str(n): str(m.amount) for n, m in (manual_amounts or {}).items()
                    },
                    created_by_id=actor_id,
                )
            )
            self._session.flush()
            dto = row.to_dto()

        logger.info(
            "landed_cost_charge_added",
            extra={
                "document_id": str(document_id),
                "cost_type": cost_type.value,
                "amount": str(amount.amount),
                "basis": basis.value,
            },
        )
        return dto

    # =========================================================================
    # Calculation and posting
    # =========================================================================

    def calculate(
        self,
        document_id: UUID,
        actor_id: UUID,
        expected_version: int | None = None,
    ) -> LandedCostDocument:
        """
        Allocate every charge over the lines and recompute line totals.

        Preconditions:
            - Document is DRAFT with at least one line.
        Postconditions:
            - One allocation row per charge and line; status CALCULATED.
        """
        with transaction_boundary(
            self._session, self._auto_commit, logger, "landed_cost_calculate",
            document_id=document_id,
        ):
            row = self._get_orm(document_id)
            check_expected_version(ENTITY_TYPE, document_id, row.version, expected_version)
            self._require_status(row, DocumentStatus.DRAFT, DocumentStatus.CALCULATED)
            if not row.lines:
                raise EmptyDocumentError(str(document_id))

            allocated: dict[UUID, Money] = defaultdict(lambda: Money.zero(row.currency))
            for charge in row.charges:
                result = self._engine.allocate(
                    amount=Money.of(charge.amount, row.currency),
                    targets=self._targets(row, charge),
                    basis=AllocationBasis(charge.basis),
                )
                for line, share in zip(row.lines, result.lines):
                    row.allocations.append(
                        AllocatedLandedCostModel(
                            charge_id=charge.id,
                            line_id=line.id,
                            basis_value=share.basis_value,
                            amount=share.allocated.amount,
                            created_by_id=actor_id,
                        )
                    )
                    allocated[line.id] = allocated[line.id] + share.allocated

            for line in row.lines:
                base = (Money.of(line.base_unit_price, row.currency) * line.quantity).round()
                landed = base + allocated[line.id]
                line.total_allocated_cost = allocated[line.id].amount
                line.total_landed_cost = landed.amount
                line.landed_cost_per_unit = round_price(landed.amount / line.quantity)
                line.updated_by_id = actor_id

            row.status = DocumentStatus.CALCULATED.value
            row.updated_by_id = actor_id
            with stale_data_as_conflict(ENTITY_TYPE, row.id):
                self._session.flush()
            dto = row.to_dto()

        logger.info(
            "landed_cost_calculated",
            extra={
                "document_id": str(document_id),
                "lines": len(dto.lines),
                "charges": len(dto.charges),
                "total_allocated": str(dto.total_allocated),
            },
        )
        return dto

    def post(
        self,
        document_id: UUID,
        actor_id: UUID,
        posting_date: date | None = None,
        expected_version: int | None = None,
    ) -> LandedCostDocument:
        """Make a CALCULATED document final and publish the new landed prices."""
        posting_date = posting_date or self._clock.now().date()
        with transaction_boundary(
            self._session, self._auto_commit, logger, "landed_cost_post",
            document_id=document_id,
        ):
            row = self._get_orm(document_id)
            check_expected_version(ENTITY_TYPE, document_id, row.version, expected_version)
            self._require_status(row, DocumentStatus.CALCULATED, DocumentStatus.POSTED)

            if self._ledger is not None:
                self._post_to_ledger(row, posting_date, actor_id)

            row.status = DocumentStatus.POSTED.value
            row.posting_date = posting_date
            row.posted_at = self._clock.now()
            row.updated_by_id = actor_id
            with stale_data_as_conflict(ENTITY_TYPE, row.id):
                self._session.flush()
            dto = row.to_dto()

        instructions = self._price_instructions(dto)
        if self._publisher is not None:
            for instruction in instructions:
                self._publisher.publish(PRICE_UPDATE_TOPIC, instruction)

        logger.info(
            "landed_cost_posted",
            extra={
                "document_id": str(document_id),
                "document_number": dto.document_number,
                "materials": len(instructions),
                "total_allocated": str(dto.total_allocated),
            },
        )
        return dto

    # =========================================================================
    # Queries
    # =========================================================================

    def get_document(self, document_id: UUID) -> LandedCostDocument:
        return self._get_orm(document_id).to_dto()

    # =========================================================================
    # Internals
    # =========================================================================

    def _get_orm(self, document_id: UUID) -> LandedCostDocumentModel:
        row = self._session.get(LandedCostDocumentModel, document_id)
        if row is None:
            raise DocumentNotFoundError(str(document_id))
        return row

    @staticmethod
    def _require_draft(row: LandedCostDocumentModel, operation: str) -> None:
        if row.status != DocumentStatus.DRAFT.value:
            raise InvalidStatusTransitionError(ENTITY_TYPE, str(row.id), row.status, operation)

    @staticmethod
    def _require_status(
        row: LandedCostDocumentModel,
        required: DocumentStatus,
        target: DocumentStatus,
    ) -> None:
        if row.status != required.value:
            logger.warning(
                "landed_cost_transition_rejected",
                extra={
                    "document_id": str(row.id),
                    "current_status": row.status,
                    "target_status": target.value,
                },
            )
            raise InvalidStatusTransitionError(
                ENTITY_TYPE, str(row.id), row.status, target.value
            )

    @staticmethod
    def _check_currency(row: LandedCostDocumentModel, money: Money) -> None:
        if money.currency.code != row.currency:
            raise CurrencyMismatchError(row.currency, money.currency.code)

    @staticmethod
    def _targets(
        row: LandedCostDocumentModel, charge: LandedCostChargeModel
    ) -> list[AllocationTarget]:
        manual = charge.manual_amounts or {}
        targets = []
        for line in row.lines:
            manual_amount = manual.get(str(line.line_number))
            targets.append(
                AllocationTarget(
                    target_id=str(line.id),
                    quantity=line.quantity,
                    value=(Money.of(line.base_unit_price, row.currency) * line.quantity).round(),
                    weight=line.weight,
                    volume=line.volume,
                    manual_amount=(
                        Money.of(manual_amount, row.currency)
                        if manual_amount is not None
                        else None
                    ),
                )
            )
        return targets

    def _post_to_ledger(
        self, row: LandedCostDocumentModel, posting_date: date, actor_id: UUID
    ) -> None:
        per_material: dict[str, Money] = defaultdict(lambda: Money.zero(row.currency))
        for line in row.lines:
            per_material[line.material_id] = per_material[line.material_id] + Money.of(
                line.total_allocated_cost, row.currency
            )
        for material_id, amount in sorted(per_material.items()):
            if amount.is_zero:
                continue
            with LogContext.bind(material_id=material_id, plant_id=row.plant_id):
                self._ledger.post_landed_cost(
                    material_id, row.plant_id, amount, posting_date, actor_id,
                    event_id=deterministic_id("landed_cost", row.id, material_id),
                    reference=row.document_number,
                )

    def _price_instructions(self, doc: LandedCostDocument) -> list[PriceUpdateInstruction]:
        """One instruction per material: base price -> landed price per unit."""
        view = self._config.primary_view
        quantities: dict[str, Decimal] = defaultdict(Decimal)
        base_values: dict[str, Decimal] = defaultdict(Decimal)
        landed_values: dict[str, Decimal] = defaultdict(Decimal)
        for line in doc.lines:
            quantities[line.material_id] += line.quantity
            base_values[line.material_id] += line.base_value
            landed_values[line.material_id] += line.total_landed_cost

        return [
            PriceUpdateInstruction(
                instruction_id=deterministic_id("landed_cost_price", doc.id, material_id),
                material_id=material_id,
                plant_id=doc.plant_id,
                view=view.view,
                price_type=view.price_method,
                old_price=round_price(base_values[material_id] / quantity),
                new_price=round_price(landed_values[material_id] / quantity),
                currency=doc.currency,
                effective_date=doc.posting_date,
                source="landed_cost",
                source_id=doc.id,
            )
            for material_id, quantity in sorted(quantities.items())
        ]
