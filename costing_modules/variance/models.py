"""
Variance Domain Models (``costing_modules.variance.models``).

Frozen DTOs for materialized cost variances and the period variance
report.  The arithmetic lives in ``costing_engines.variance``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from costing_engines.variance import (
    VarianceClassification,
    VarianceContributor,
    VarianceKind,
)


class VarianceCategory(Enum):
    MATERIAL = "material"
    LABOR = "labor"
    OVERHEAD = "overhead"


class VarianceSource(Enum):
    LEDGER_ENTRY = "ledger_entry"
    WIP_ENTRY = "wip_entry"


@dataclass(frozen=True)
class CostVariance:
    """
    Standard-vs-actual deviation of one movement.

    price_variance + quantity_variance + rounding_difference
    == total_variance == actual_cost - standard_cost.
    """

    id: UUID
    source_type: VarianceSource
    source_id: UUID
    material_id: str
    plant_id: str
    fiscal_year: int
    fiscal_period: int
    category: VarianceCategory
    currency: str
    standard_quantity: Decimal
    actual_quantity: Decimal
    standard_price: Decimal
    actual_price: Decimal
    standard_cost: Decimal
    actual_cost: Decimal
    price_variance: Decimal
    quantity_variance: Decimal
    quantity_kind: VarianceKind
    total_variance: Decimal
    rounding_difference: Decimal
    price_classification: VarianceClassification
    quantity_classification: VarianceClassification
    classification: VarianceClassification
    version: int
    order_id: str | None = None
    run_id: UUID | None = None
    settled: bool = False
    settlement_ref: str | None = None
    settled_at: datetime | None = None


@dataclass(frozen=True)
class MaterialVarianceSummary:
    material_id: str
    price_variance: Decimal
    quantity_variance: Decimal
    total_variance: Decimal
    variance_count: int
    classification: VarianceClassification


@dataclass(frozen=True)
class VarianceReport:
    """Variances of one plant and period, aggregated for review."""

    plant_id: str
    fiscal_year: int
    fiscal_period: int
    currency: str
    variance_count: int
    total_variance: Decimal
    favorable_total: Decimal
    unfavorable_total: Decimal
    by_category: dict[str, Decimal] = field(default_factory=dict)
    by_material: tuple[MaterialVarianceSummary, ...] = ()
    top_favorable: tuple[VarianceContributor, ...] = ()
    top_unfavorable: tuple[VarianceContributor, ...] = ()
