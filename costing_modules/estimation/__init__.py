"""
Cost Estimation Module (``costing_modules.estimation``).

Lot-sized standard cost estimates rolled up from BOMs, routings and
overhead costing sheets.  All cost arithmetic lives in
``costing_engines.rollup``; this package resolves structures, persists
estimates and drives their lifecycle.
"""

from costing_modules.estimation.models import (
    BillOfMaterials,
    BomComponent,
    ComponentOrigin,
    ComponentPriceSource,
    CostComponent,
    CostEstimate,
    EstimateStatus,
    InMemoryStructureResolver,
    Routing,
    StructureResolver,
)
from costing_modules.estimation.service import CostEstimateService, StandardCostReader

__all__ = [
    "BillOfMaterials",
    "BomComponent",
    "ComponentOrigin",
    "ComponentPriceSource",
    "CostComponent",
    "CostEstimate",
    "CostEstimateService",
    "EstimateStatus",
    "InMemoryStructureResolver",
    "Routing",
    "StandardCostReader",
    "StructureResolver",
]
