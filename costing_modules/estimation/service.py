"""
Cost Estimation Service (``costing_modules.estimation.service``).

Responsibility
--------------
Creates and maintains lot-sized cost estimates: resolves the product
structure, prices every component, rolls the cost up through
``CostRollupEngine`` and persists the estimate with one cost component per
cost type.  Drives the estimate lifecycle DRAFT -> RELEASED -> STANDARD ->
ARCHIVED and answers "what is the active standard cost" for the material
ledger and variance analysis.

Architecture
------------
Layer: **Modules** -- thin orchestration over the pure roll-up engine.
Structures come from a ``StructureResolver``; purchased component prices
come from an optional ``ComponentPriceSource`` (the material ledger).

Invariants
----------
- Each public method owns its transaction boundary (commit / rollback)
  unless built with ``auto_commit=False``.
- Validation happens before any write; no partial estimate is persisted.
- sum(components) == total_cost; unit_cost == total_cost / lot_size at
  price precision.
- At most one STANDARD estimate per material/plant.  Marking a new
  standard archives the previous one in the same transaction.

Failure Modes
-------------
- InvalidLotSizeError, MissingBOMError, MissingRoutingError,
  MissingCostingSheetError, MissingStandardCostError,
  IncompleteOverheadBaseError, CyclicStructureError.
- InvalidStatusTransitionError, NoCostComponentsError.
- ConcurrencyConflictError on a stale expected_version or a concurrent
  lifecycle change.

Usage::

    service = CostEstimateService(session, resolver, config=config)
    estimate = service.create_estimate(
        material_id="FG-100", plant_id="P1", lot_size=Decimal("100"),
        valid_from=date(2024, 1, 1), costing_sheet="STD-DIRECT",
        actor_id=actor_id,
    )
    service.release(estimate.id, actor_id)
    service.mark_standard(estimate.id, actor_id)
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from costing_config import CostingConfig, get_active_config
from costing_engines.rollup import (
    CostComponentType,
    CostRollupEngine,
    OverheadBase,
    OverheadRate,
    PricedBomLine,
    RollupResult,
)
from costing_kernel.db.versioning import check_expected_version, stale_data_as_conflict
from costing_kernel.domain.clock import Clock, SystemClock
from costing_kernel.domain.extensions import ExtensionSchemaRegistry
from costing_kernel.domain.values import Money, round_price
from costing_kernel.exceptions import (
    ConcurrencyConflictError,
    CyclicStructureError,
    EstimateNotFoundError,
    InvalidLotSizeError,
    InvalidStatusTransitionError,
    MissingBOMError,
    MissingCostingSheetError,
    MissingRoutingError,
    MissingStandardCostError,
    NoCostComponentsError,
    ValidationError,
)
from costing_kernel.logging_config import get_logger
from costing_modules._service_helpers import (
    build_extension_registry,
    transaction_boundary,
)
from costing_modules.estimation.models import (
    ALLOWED_TRANSITIONS,
    BillOfMaterials,
    ComponentOrigin,
    ComponentPriceSource,
    CostEstimate,
    EstimateStatus,
    Routing,
    StructureResolver,
)
from costing_modules.estimation.orm import CostComponentModel, CostEstimateModel

logger = get_logger("modules.estimation.service")

ENTITY_TYPE = "CostEstimate"


class StandardCostReader:
    """Read-only access to active standard estimates."""

    def __init__(self, session: Session):
        self._session = session

    def active_standard(self, material_id: str, plant_id: str) -> CostEstimateModel | None:
        return self._session.execute(
            select(CostEstimateModel).where(
                CostEstimateModel.material_id == material_id,
                CostEstimateModel.plant_id == plant_id,
                CostEstimateModel.status == EstimateStatus.STANDARD.value,
            )
        ).scalar_one_or_none()

    def get_standard_unit_cost(self, material_id: str, plant_id: str) -> Money | None:
        row = self.active_standard(material_id, plant_id)
        if row is None:
            return None
        return Money.of(row.unit_cost, row.currency)


class CostEstimateService:
    """
    Cost estimate lifecycle and roll-up.

    Contract
    --------
    Public methods return frozen ``CostEstimate`` DTOs, never ORM rows.
    """

    def __init__(
        self,
        session: Session,
        resolver: StructureResolver,
        config: CostingConfig | None = None,
        clock: Clock | None = None,
        price_source: ComponentPriceSource | None = None,
        extensions: ExtensionSchemaRegistry | None = None,
        auto_commit: bool = True,
    ):
        self._session = session
        self._resolver = resolver
        self._config = config or get_active_config()
        self._clock = clock or SystemClock()
        self._price_source = price_source
        self._extensions = extensions or build_extension_registry(self._config)
        self._auto_commit = auto_commit
        self._engine = CostRollupEngine()
        self._standards = StandardCostReader(session)

    # =========================================================================
    # Creation and roll-up
    # =========================================================================

    def create_estimate(
        self,
        material_id: str,
        plant_id: str,
        lot_size: Decimal,
        valid_from: date,
        actor_id: UUID,
        costing_version: int = 1,
        currency: str | None = None,
        bom_version: str | None = None,
        routing_version: str | None = None,
        costing_sheet: str | None = None,
        tenant_id: str | None = None,
        extension_attributes: dict[str, Any] | None = None,
    ) -> CostEstimate:
        """
        Roll up a new DRAFT estimate.

        Preconditions:
            - lot_size > 0.
            - BOM and routing resolve; costing_sheet (if given) is configured.
            - Every component has a standard, a sub-BOM or a current price.
        Postconditions:
            - One DRAFT estimate with one component per cost type.
        """
        currency = currency or self._config.currency
        logger.info(
            "cost_estimate_create_started",
            extra={
                "material_id": material_id,
                "plant_id": plant_id,
                "lot_size": str(lot_size),
                "costing_version": costing_version,
            },
        )

        with transaction_boundary(
            self._session, self._auto_commit, logger, "cost_estimate_create",
            material_id=material_id, plant_id=plant_id,
        ):
            if lot_size <= 0:
                raise InvalidLotSizeError(material_id, lot_size)
            attributes = self._extensions.validate(
                tenant_id or "*", ENTITY_TYPE, extension_attributes
            )

            bom, routing = self._resolve_structures(material_id, bom_version, routing_version)
            result = self._roll_up(
                material_id, plant_id, lot_size, currency, bom, routing, costing_sheet
            )

            row = CostEstimateModel(
                material_id=material_id,
                plant_id=plant_id,
                costing_version=costing_version,
                valid_from=valid_from,
                lot_size=lot_size,
                currency=currency,
                bom_version=bom.version,
                routing_version=routing.version,
                costing_sheet=costing_sheet,
                status=EstimateStatus.DRAFT.value,
                total_cost=result.total_cost.amount,
                unit_cost=result.unit_cost.amount,
                tenant_id=tenant_id,
                extension_attributes=attributes,
                created_by_id=actor_id,
            )
            self._session.add(row)
            self._replace_rollup_components(row, result, actor_id)
            self._session.flush()
            dto = row.to_dto()

        logger.info(
            "cost_estimate_created",
            extra={
                "estimate_id": str(dto.id),
                "material_id": material_id,
                "plant_id": plant_id,
                "total_cost": str(dto.total_cost),
                "unit_cost": str(dto.unit_cost),
            },
        )
        return dto

    def recalculate(self, estimate_id: UUID, actor_id: UUID) -> CostEstimate:
        """Re-run the roll-up of a DRAFT estimate; manual components are kept."""
        with transaction_boundary(
            self._session, self._auto_commit, logger, "cost_estimate_recalculate",
            estimate_id=estimate_id,
        ):
            row = self._get_orm(estimate_id)
            self._require_draft(row, "recalculate")
            bom, routing = self._resolve_structures(
                row.material_id, row.bom_version, row.routing_version
            )
            result = self._roll_up(
                row.material_id, row.plant_id, row.lot_size, row.currency,
                bom, routing, row.costing_sheet,
            )
            self._replace_rollup_components(row, result, actor_id)
            self._refresh_totals(row, actor_id)
            self._session.flush()
            dto = row.to_dto()

        logger.info(
            "cost_estimate_recalculated",
            extra={"estimate_id": str(estimate_id), "total_cost": str(dto.total_cost)},
        )
        return dto

    def add_manual_component(
        self,
        estimate_id: UUID,
        cost_type: CostComponentType,
        amount: Decimal,
        actor_id: UUID,
        fixed_amount: Decimal = Decimal("0"),
    ) -> CostEstimate:
        """Add a manually entered amount to a DRAFT estimate."""
        with transaction_boundary(
            self._session, self._auto_commit, logger, "cost_estimate_manual_component",
            estimate_id=estimate_id,
        ):
            if abs(fixed_amount) > abs(amount):
                raise ValidationError(
                    f"Fixed amount {fixed_amount} exceeds component amount {amount}"
                )
            row = self._get_orm(estimate_id)
            self._require_draft(row, "add_manual_component")

            existing = next(
                (
                    c for c in row.components
                    if c.cost_type == cost_type.value
                    and c.origin == ComponentOrigin.MANUAL.value
                ),
                None,
            )
            if existing is None:
                row.components.append(
                    CostComponentModel(
                        cost_type=cost_type.value,
                        origin=ComponentOrigin.MANUAL.value,
                        amount=amount,
                        fixed_amount=fixed_amount,
                        created_by_id=actor_id,
                    )
                )
            else:
                existing.amount = existing.amount + amount
                existing.fixed_amount = existing.fixed_amount + fixed_amount
                existing.updated_by_id = actor_id
            self._refresh_totals(row, actor_id)
            self._session.flush()
            dto = row.to_dto()

        logger.info(
            "cost_estimate_manual_component_added",
            extra={
                "estimate_id": str(estimate_id),
                "cost_type": cost_type.value,
                "amount": str(amount),
            },
        )
        return dto

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def release(
        self, estimate_id: UUID, actor_id: UUID, expected_version: int | None = None
    ) -> CostEstimate:
        """DRAFT -> RELEASED; the estimate is frozen from here on."""
        with transaction_boundary(
            self._session, self._auto_commit, logger, "cost_estimate_release",
            estimate_id=estimate_id,
        ):
            row = self._get_orm(estimate_id)
            check_expected_version(ENTITY_TYPE, estimate_id, row.version, expected_version)
            self._check_transition(row, EstimateStatus.RELEASED)
            if not row.components:
                raise NoCostComponentsError(str(estimate_id))
            self._set_status(row, EstimateStatus.RELEASED, actor_id)
            dto = row.to_dto()

        logger.info("cost_estimate_released", extra={"estimate_id": str(estimate_id)})
        return dto

    def mark_standard(
        self, estimate_id: UUID, actor_id: UUID, expected_version: int | None = None
    ) -> CostEstimate:
        """RELEASED -> STANDARD, archiving the previous standard of the material."""
        with transaction_boundary(
            self._session, self._auto_commit, logger, "cost_estimate_mark_standard",
            estimate_id=estimate_id,
        ):
            row = self._get_orm(estimate_id)
            check_expected_version(ENTITY_TYPE, estimate_id, row.version, expected_version)
            self._check_transition(row, EstimateStatus.STANDARD)

            previous = self._standards.active_standard(row.material_id, row.plant_id)
            if previous is not None and previous.id != row.id:
                self._set_status(previous, EstimateStatus.ARCHIVED, actor_id)
                logger.info(
                    "cost_estimate_superseded",
                    extra={
                        "estimate_id": str(previous.id),
                        "superseded_by": str(row.id),
                        "material_id": row.material_id,
                    },
                )
            try:
                self._set_status(row, EstimateStatus.STANDARD, actor_id)
            except IntegrityError as exc:
                raise ConcurrencyConflictError(ENTITY_TYPE, str(estimate_id)) from exc
            dto = row.to_dto()

        logger.info(
            "cost_estimate_marked_standard",
            extra={
                "estimate_id": str(estimate_id),
                "material_id": dto.material_id,
                "plant_id": dto.plant_id,
                "unit_cost": str(dto.unit_cost),
            },
        )
        return dto

    def archive(
        self, estimate_id: UUID, actor_id: UUID, expected_version: int | None = None
    ) -> CostEstimate:
        with transaction_boundary(
            self._session, self._auto_commit, logger, "cost_estimate_archive",
            estimate_id=estimate_id,
        ):
            row = self._get_orm(estimate_id)
            check_expected_version(ENTITY_TYPE, estimate_id, row.version, expected_version)
            self._check_transition(row, EstimateStatus.ARCHIVED)
            self._set_status(row, EstimateStatus.ARCHIVED, actor_id)
            dto = row.to_dto()

        logger.info("cost_estimate_archived", extra={"estimate_id": str(estimate_id)})
        return dto

    # =========================================================================
    # Queries
    # =========================================================================

    def get_estimate(self, estimate_id: UUID) -> CostEstimate:
        return self._get_orm(estimate_id).to_dto()

    def list_estimates(self, material_id: str, plant_id: str) -> list[CostEstimate]:
        rows = self._session.execute(
            select(CostEstimateModel)
            .where(
                CostEstimateModel.material_id == material_id,
                CostEstimateModel.plant_id == plant_id,
            )
            .order_by(CostEstimateModel.costing_version, CostEstimateModel.valid_from)
        ).scalars()
        return [r.to_dto() for r in rows]

    def get_active_standard(self, material_id: str, plant_id: str) -> CostEstimate | None:
        row = self._standards.active_standard(material_id, plant_id)
        return row.to_dto() if row is not None else None

    def get_standard_unit_cost(self, material_id: str, plant_id: str) -> Money | None:
        return self._standards.get_standard_unit_cost(material_id, plant_id)

    # =========================================================================
    # Internals
    # =========================================================================

    def _get_orm(self, estimate_id: UUID) -> CostEstimateModel:
        row = self._session.get(CostEstimateModel, estimate_id)
        if row is None:
            raise EstimateNotFoundError(str(estimate_id))
        return row

    @staticmethod
    def _require_draft(row: CostEstimateModel, operation: str) -> None:
        if row.status != EstimateStatus.DRAFT.value:
            raise InvalidStatusTransitionError(ENTITY_TYPE, str(row.id), row.status, operation)

    @staticmethod
    def _check_transition(row: CostEstimateModel, target: EstimateStatus) -> None:
        current = EstimateStatus(row.status)
        if target not in ALLOWED_TRANSITIONS[current]:
            logger.warning(
                "cost_estimate_transition_rejected",
                extra={
                    "estimate_id": str(row.id),
                    "current_status": current.value,
                    "target_status": target.value,
                },
            )
            raise InvalidStatusTransitionError(
                ENTITY_TYPE, str(row.id), current.value, target.value
            )

    def _set_status(
        self, row: CostEstimateModel, status: EstimateStatus, actor_id: UUID
    ) -> None:
        row.status = status.value
        row.updated_by_id = actor_id
        with stale_data_as_conflict(ENTITY_TYPE, row.id):
            self._session.flush()

    def _resolve_structures(
        self,
        material_id: str,
        bom_version: str | None,
        routing_version: str | None,
    ) -> tuple[BillOfMaterials, Routing]:
        bom = self._resolver.resolve_bom(material_id, bom_version)
        if bom is None:
            raise MissingBOMError(material_id, bom_version)
        routing = self._resolver.resolve_routing(material_id, routing_version)
        if routing is None:
            raise MissingRoutingError(material_id, routing_version)
        return bom, routing

    def _overhead_rates(self, sheet_code: str | None) -> list[OverheadRate]:
        if not sheet_code:
            return []
        sheet = self._config.costing_sheet(sheet_code)
        if sheet is None:
            raise MissingCostingSheetError(sheet_code)
        return [
            OverheadRate(
                name=line.name,
                base=OverheadBase(line.base),
                rate=line.rate,
                fixed_percent=line.fixed_percent,
            )
            for line in sheet.lines
        ]

    def _roll_up(
        self,
        material_id: str,
        plant_id: str,
        lot_size: Decimal,
        currency: str,
        bom: BillOfMaterials,
        routing: Routing | None,
        sheet_code: str | None,
        path: tuple[str, ...] = (),
    ) -> RollupResult:
        overhead = self._overhead_rates(sheet_code)
        path = path + (material_id,)
        lines = [
            PricedBomLine(
                component_id=c.component_id,
                quantity=c.quantity,
                scrap_percent=c.scrap_percent,
                unit_cost=self._component_unit_cost(
                    c.component_id, plant_id, currency, sheet_code, path
                ),
            )
            for c in bom.components
        ]
        return self._engine.roll_up(
            material_id=material_id,
            lot_size=lot_size,
            currency=currency,
            bom_lines=lines,
            operations=routing.operations if routing is not None else (),
            overhead=overhead,
            sheet_code=sheet_code or "",
        )

    def _component_unit_cost(
        self,
        component_id: str,
        plant_id: str,
        currency: str,
        sheet_code: str | None,
        path: tuple[str, ...],
    ) -> Money:
        """Standard first, then a sub-assembly roll-up, then the current price."""
        if component_id in path:
            raise CyclicStructureError(list(path) + [component_id])

        standard = self._standards.get_standard_unit_cost(component_id, plant_id)
        if standard is not None:
            return standard

        sub_bom = self._resolver.resolve_bom(component_id)
        if sub_bom is not None:
            sub = self._roll_up(
                component_id, plant_id, Decimal("1"), currency,
                sub_bom, self._resolver.resolve_routing(component_id), sheet_code, path,
            )
            logger.debug(
                "cost_estimate_subassembly_rolled_up",
                extra={"material_id": component_id, "unit_cost": str(sub.unit_cost.amount)},
            )
            return sub.unit_cost

        if self._price_source is not None:
            price = self._price_source.current_price(component_id, plant_id)
            if price is not None:
                return price

        raise MissingStandardCostError(component_id, plant_id, context="component costing")

    def _replace_rollup_components(
        self, row: CostEstimateModel, result: RollupResult, actor_id: UUID
    ) -> None:
        row.components[:] = [
            c for c in row.components if c.origin == ComponentOrigin.MANUAL.value
        ]
        # Deleted rollup rows must leave before their replacements arrive
        self._session.flush()
        for component in result.components:
            row.components.append(
                CostComponentModel(
                    cost_type=component.cost_type.value,
                    origin=ComponentOrigin.ROLLUP.value,
                    amount=component.amount.amount,
                    fixed_amount=component.fixed_amount.amount,
                    created_by_id=actor_id,
                )
            )

    @staticmethod
    def _refresh_totals(row: CostEstimateModel, actor_id: UUID) -> None:
        total = sum((c.amount for c in row.components), Decimal("0"))
        row.total_cost = total
        row.unit_cost = round_price(total / row.lot_size)
        row.updated_by_id = actor_id
