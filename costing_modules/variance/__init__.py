"""
Variance Module (``costing_modules.variance``).

Materialized standard-vs-actual cost variances per period, the variance
report and the one-time settlement stamp.
"""

from costing_modules.variance.models import (
    CostVariance,
    MaterialVarianceSummary,
    VarianceCategory,
    VarianceReport,
    VarianceSource,
)
from costing_modules.variance.service import VarianceAnalyzer

__all__ = [
    "CostVariance",
    "MaterialVarianceSummary",
    "VarianceAnalyzer",
    "VarianceCategory",
    "VarianceReport",
    "VarianceSource",
]
