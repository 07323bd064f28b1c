"""
Configuration Loader (``costing_config.loader``).

Responsibility
--------------
Loads a YAML configuration file and parses it into the frozen
``costing_config.schema`` types.  Runtime callers go through
``costing_config.get_active_config()``.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; required keys have no silent defaults.
* Amounts and rates are parsed as Decimal from their string form, never
  through float.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown price method / view / overhead base -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from costing_config.schema import (
    ATTRIBUTE_TYPES,
    OVERHEAD_BASES,
    PRICE_METHODS,
    VALUATION_VIEWS,
    ActivityRateDef,
    CostingConfig,
    CostingSheetDef,
    ExtensionAttributeDef,
    ExtensionSchemaDef,
    OverheadLineDef,
    SettlementAccounts,
    ValuationViewDef,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a single YAML file; an empty file gives an empty dict."""
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, field_name: str) -> Decimal:
    if isinstance(value, float):
        # YAML floats are re-read from their repr to keep the written digits
        value = repr(value)
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"{field_name}: invalid decimal {value!r}") from e


def _require_member(value: str, allowed: frozenset[str], field_name: str) -> str:
    if value not in allowed:
        raise ValueError(
            f"{field_name}: {value!r} is not one of {sorted(allowed)}"
        )
    return value


def parse_valuation_view(data: dict[str, Any]) -> ValuationViewDef:
    return ValuationViewDef(
        view=_require_member(data["view"], VALUATION_VIEWS, "valuation_views.view"),
        price_method=_require_member(
            data["price_method"], PRICE_METHODS, "valuation_views.price_method"
        ),
    )


def parse_overhead_line(data: dict[str, Any]) -> OverheadLineDef:
    return OverheadLineDef(
        name=data["name"],
        base=_require_member(data["base"], OVERHEAD_BASES, "costing_sheets.lines.base"),
        rate=parse_decimal(data["rate"], "costing_sheets.lines.rate"),
        fixed_percent=parse_decimal(
            data.get("fixed_percent", "0"), "costing_sheets.lines.fixed_percent"
        ),
    )


def parse_costing_sheet(data: dict[str, Any]) -> CostingSheetDef:
    return CostingSheetDef(
        code=data["code"],
        lines=tuple(parse_overhead_line(line) for line in data.get("lines", [])),
    )


def parse_activity_rate(data: dict[str, Any]) -> ActivityRateDef:
    return ActivityRateDef(
        plant_id=str(data["plant_id"]),
        labor_rate=parse_decimal(data["labor_rate"], "activity_rates.labor_rate"),
        machine_rate=parse_decimal(data["machine_rate"], "activity_rates.machine_rate"),
    )


def parse_extension_schema(data: dict[str, Any]) -> ExtensionSchemaDef:
    attributes = tuple(
        ExtensionAttributeDef(
            name=attr["name"],
            attribute_type=_require_member(
                attr["type"], ATTRIBUTE_TYPES, "extension_schemas.attributes.type"
            ),
            required=bool(attr.get("required", False)),
            max_length=attr.get("max_length"),
        )
        for attr in data.get("attributes", [])
    )
    return ExtensionSchemaDef(
        tenant_id=str(data["tenant_id"]),
        entity_type=data["entity_type"],
        attributes=attributes,
    )


def parse_config(data: dict[str, Any]) -> CostingConfig:
    """Parse a full configuration mapping."""
    views = tuple(parse_valuation_view(v) for v in data["valuation_views"])
    if not views:
        raise ValueError("valuation_views: at least one view is required")
    names = [v.view for v in views]
    if len(set(names)) != len(names):
        raise ValueError(f"valuation_views: duplicate view in {names}")
    if all(v.price_method == "actual" for v in views):
        raise ValueError("valuation_views: at least one view must be priced at posting time")

    return CostingConfig(
        config_id=data["config_id"],
        version=int(data.get("version", 1)),
        currency=data["currency"],
        valuation_views=views,
        costing_sheets=tuple(
            parse_costing_sheet(s) for s in data.get("costing_sheets", [])
        ),
        activity_rates=tuple(
            parse_activity_rate(r) for r in data.get("activity_rates", [])
        ),
        settlement_accounts=SettlementAccounts(
            accounts={str(k): str(v) for k, v in data.get("settlement_accounts", {}).items()}
        ),
        extension_schemas=tuple(
            parse_extension_schema(s) for s in data.get("extension_schemas", [])
        ),
        require_standard_price=bool(data.get("require_standard_price", False)),
        allow_backorder=bool(data.get("allow_backorder", False)),
        variance_top_n=int(data.get("variance_top_n", 5)),
        checksum=compute_checksum(data),
    )


def load_config(path: Path) -> CostingConfig:
    return parse_config(load_yaml_file(path))


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form; identical data, identical hash."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
