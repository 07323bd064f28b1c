"""
CostingConfig schema.

The human-authored, reviewable configuration of the costing engine.  YAML
files are parsed into these frozen types by ``costing_config.loader``.
Values are plain strings and Decimals; engines and services translate them
into their own enums.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

PRICE_METHODS = frozenset({"moving_average", "standard", "actual"})
VALUATION_VIEWS = frozenset({"legal", "group", "profit_center"})
OVERHEAD_BASES = frozenset(
    {"material", "labor", "machine", "conversion", "direct", "per_unit"}
)
ATTRIBUTE_TYPES = frozenset({"string", "decimal", "integer", "boolean", "date"})


@dataclass(frozen=True)
class ValuationViewDef:
    """One valuation view and the price method it values stock with."""

    view: str
    price_method: str


@dataclass(frozen=True)
class OverheadLineDef:
    """
    One costing-sheet line.

    ``rate`` is a percentage of the base, or an amount per unit of output
    when ``base`` is ``per_unit``.  ``fixed_percent`` is the share of the
    resulting overhead that is fixed cost.
    """

    name: str
    base: str
    rate: Decimal
    fixed_percent: Decimal = Decimal("0")


@dataclass(frozen=True)
class CostingSheetDef:
    code: str
    lines: tuple[OverheadLineDef, ...] = ()


@dataclass(frozen=True)
class ActivityRateDef:
    """Labor and machine rates per hour at a plant."""

    plant_id: str
    labor_rate: Decimal
    machine_rate: Decimal


@dataclass(frozen=True)
class SettlementAccounts:
    """
    Target accounts for settlement instructions.

    Keys are ``<category>.<variance kind>`` (``material.price``,
    ``labor.efficiency`` ...) plus ``wip``; ``default`` catches the rest.
    """

    accounts: dict[str, str] = field(default_factory=dict)

    def account_for(self, key: str) -> str:
        if key in self.accounts:
            return self.accounts[key]
        category = key.split(".", 1)[0]
        if category in self.accounts:
            return self.accounts[category]
        return self.accounts.get("default", "UNASSIGNED")


@dataclass(frozen=True)
class ExtensionAttributeDef:
    name: str
    attribute_type: str
    required: bool = False
    max_length: int | None = None


@dataclass(frozen=True)
class ExtensionSchemaDef:
    tenant_id: str
    entity_type: str
    attributes: tuple[ExtensionAttributeDef, ...] = ()


@dataclass(frozen=True)
class CostingConfig:
    """Root configuration object."""

    config_id: str
    version: int
    currency: str
    valuation_views: tuple[ValuationViewDef, ...]
    costing_sheets: tuple[CostingSheetDef, ...] = ()
    activity_rates: tuple[ActivityRateDef, ...] = ()
    settlement_accounts: SettlementAccounts = field(default_factory=SettlementAccounts)
    extension_schemas: tuple[ExtensionSchemaDef, ...] = ()
    require_standard_price: bool = False
    allow_backorder: bool = False
    variance_top_n: int = 5
    checksum: str = ""

    @property
    def primary_view(self) -> ValuationViewDef:
        """
        The first view priced at posting time; its prices drive issue
        valuation and invoice differences.  ACTUAL views are only priced
        at period close and cannot be primary.
        """
        for view in self.valuation_views:
            if view.price_method != "actual":
                return view
        raise ValueError(f"Configuration {self.config_id} has no moving_average or standard view")

    def costing_sheet(self, code: str) -> CostingSheetDef | None:
        for sheet in self.costing_sheets:
            if sheet.code == code:
                return sheet
        return None

    def activity_rate(self, plant_id: str) -> ActivityRateDef | None:
        for rate in self.activity_rates:
            if rate.plant_id == plant_id:
                return rate
        for rate in self.activity_rates:
            if rate.plant_id == "*":
                return rate
        return None
