"""
WIP Module (``costing_modules.wip``).

Production-order cost accumulation and the per-period WIP positions the
close run settles.
"""

from costing_modules.wip.models import WipCostEntry, WipCostType, WIPPosition
from costing_modules.wip.service import WipService

__all__ = [
    "WIPPosition",
    "WipCostEntry",
    "WipCostType",
    "WipService",
]
