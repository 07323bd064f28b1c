"""
Landed Cost Module (``costing_modules.landed_cost``).

Freight, duty and other acquisition charges allocated over inbound lines
and capitalized into material valuation.
"""

from costing_modules.landed_cost.models import (
    AllocatedLandedCost,
    DocumentStatus,
    LandedCostCharge,
    LandedCostDocument,
    LandedCostLine,
    LandedCostType,
)
from costing_modules.landed_cost.service import LandedCostService

__all__ = [
    "AllocatedLandedCost",
    "DocumentStatus",
    "LandedCostCharge",
    "LandedCostDocument",
    "LandedCostLine",
    "LandedCostService",
    "LandedCostType",
]
