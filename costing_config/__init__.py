"""
costing_config -- single public entrypoint for costing configuration.

Responsibility:
    ``get_active_config()`` is the only way services obtain configuration.
    It returns a frozen ``CostingConfig`` parsed from the shipped
    ``defaults.yaml`` or from an explicit file.

Architecture position:
    Configuration layer.  Sits above ``costing_kernel`` and below
    ``costing_modules`` / ``costing_services``; it imports neither.

Audit relevance:
    Every call emits a ``COSTING_CONFIG_TRACE`` log entry with the config
    id, version and checksum, tying each costing run to the configuration
    that governed it.
"""

from __future__ import annotations

import logging
from pathlib import Path

from costing_config.loader import compute_checksum, load_config, parse_config
from costing_config.schema import (
    ActivityRateDef,
    CostingConfig,
    CostingSheetDef,
    ExtensionAttributeDef,
    ExtensionSchemaDef,
    OverheadLineDef,
    SettlementAccounts,
    ValuationViewDef,
)

_logger = logging.getLogger("costing_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_config(config_path: Path | None = None) -> CostingConfig:
    """Load and return the active configuration."""
    config = load_config(config_path or DEFAULT_CONFIG_PATH)
    _logger.info(
        "COSTING_CONFIG_TRACE",
        extra={
            "trace_type": "COSTING_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "currency": config.currency,
            "valuation_views": [v.view for v in config.valuation_views],
        },
    )
    return config


__all__ = [
    "ActivityRateDef",
    "CostingConfig",
    "CostingSheetDef",
    "DEFAULT_CONFIG_PATH",
    "ExtensionAttributeDef",
    "ExtensionSchemaDef",
    "OverheadLineDef",
    "SettlementAccounts",
    "ValuationViewDef",
    "compute_checksum",
    "get_active_config",
    "load_config",
    "parse_config",
]
