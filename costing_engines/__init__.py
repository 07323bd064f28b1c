"""
Module: costing_engines
Responsibility:
    Package entrypoint that re-exports the public symbols of the pure
    costing engines.  This is the import surface for higher layers
    (costing_modules, costing_services).

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import costing_kernel (domain values, exceptions, logging)
    and sibling engine modules.  MUST NOT import costing_modules or
    costing_services.

Invariants enforced:
    - Purity: engines never read the clock; dates come in as parameters.
    - Decimal-only arithmetic through the Money value object.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Every engine invocation is traced via ``@traced_engine`` (see
    ``costing_engines.tracer``), emitting COSTING_ENGINE_TRACE records with
    engine name, version, input fingerprint and duration.

Usage:
    from costing_engines.rollup import CostRollupEngine
    from costing_engines.valuation import MaterialValuationEngine
    from costing_engines.variance import VarianceCalculator
    from costing_engines.allocation import LandedCostAllocationEngine
"""

from costing_kernel.logging_config import get_logger

logger = get_logger("engines")

from costing_engines.allocation import (  # noqa: E402
    AllocationBasis,
    AllocationLine,
    AllocationResult,
    AllocationTarget,
    LandedCostAllocationEngine,
    largest_remainder_split,
)
from costing_engines.rollup import (  # noqa: E402
    CostComponentType,
    CostRollupEngine,
    OverheadBase,
    OverheadRate,
    PricedBomLine,
    RollupResult,
)
from costing_engines.tracer import compute_input_fingerprint, traced_engine  # noqa: E402
from costing_engines.valuation import (  # noqa: E402
    MaterialValuationEngine,
    PriceMethod,
    StockPosition,
    ValuationResult,
)
from costing_engines.variance import (  # noqa: E402
    VarianceCalculator,
    VarianceClassification,
    VarianceContributor,
    VarianceDecomposition,
    VarianceKind,
)

__all__ = [
    "AllocationBasis",
    "AllocationLine",
    "AllocationResult",
    "AllocationTarget",
    "CostComponentType",
    "CostRollupEngine",
    "LandedCostAllocationEngine",
    "MaterialValuationEngine",
    "OverheadBase",
    "OverheadRate",
    "PriceMethod",
    "PricedBomLine",
    "RollupResult",
    "StockPosition",
    "ValuationResult",
    "VarianceCalculator",
    "VarianceClassification",
    "VarianceContributor",
    "VarianceDecomposition",
    "VarianceKind",
    "compute_input_fingerprint",
    "largest_remainder_split",
    "traced_engine",
]
