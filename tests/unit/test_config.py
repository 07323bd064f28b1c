"""
Tests for configuration loading and lookup.
"""

from decimal import Decimal

import pytest

from costing_config import compute_checksum, get_active_config, parse_config
from costing_config.schema import SettlementAccounts


def _minimal(**overrides):
    data = {
        "config_id": "test",
        "currency": "USD",
        "valuation_views": [{"view": "legal", "price_method": "moving_average"}],
    }
    data.update(overrides)
    return data


class TestDefaultConfig:
    """The shipped defaults.yaml."""

    def test_identity(self):
        config = get_active_config()
        assert config.config_id == "costing-default"
        assert config.version == 1
        assert config.currency == "USD"
        assert len(config.checksum) == 64

    def test_views(self):
        config = get_active_config()
        views = {v.view: v.price_method for v in config.valuation_views}
        assert views == {
            "legal": "moving_average",
            "group": "standard",
            "profit_center": "actual",
        }
        assert config.primary_view.view == "legal"

    def test_costing_sheets(self):
        config = get_active_config()
        sheet = config.costing_sheet("MFG-01")
        assert [line.name for line in sheet.lines] == [
            "material handling",
            "production overhead",
        ]
        assert sheet.lines[1].fixed_percent == Decimal("60")
        assert config.costing_sheet("NOPE") is None

    def test_activity_rate_falls_back_to_wildcard(self):
        config = get_active_config()
        rate = config.activity_rate("ANY-PLANT")
        assert rate.labor_rate == Decimal("45.00")
        assert rate.machine_rate == Decimal("80.00")

    def test_config_load_is_traced(self, captured_logs):
        get_active_config()
        traces = [r for r in captured_logs() if r["message"] == "COSTING_CONFIG_TRACE"]
        assert traces
        assert traces[-1]["config_id"] == "costing-default"


class TestSettlementAccounts:
    def test_lookup_order(self):
        accounts = get_active_config().settlement_accounts
        assert accounts.account_for("material.price") == "5410"
        assert accounts.account_for("material.quantity") == "5420"
        assert accounts.account_for("labor.efficiency") == "5430"
        assert accounts.account_for("overhead.efficiency") == "5440"
        assert accounts.account_for("wip") == "1450"
        assert accounts.account_for("material.efficiency") == "5490"

    def test_unassigned_without_default(self):
        assert SettlementAccounts().account_for("material.price") == "UNASSIGNED"


class TestParseConfig:
    def test_minimal(self):
        config = parse_config(_minimal())
        assert config.variance_top_n == 5
        assert config.allow_backorder is False
        assert config.costing_sheets == ()

    def test_plant_specific_rate_wins(self):
        config = parse_config(_minimal(activity_rates=[
            {"plant_id": "*", "labor_rate": "45", "machine_rate": "80"},
            {"plant_id": "P2", "labor_rate": "50", "machine_rate": "90"},
        ]))
        assert config.activity_rate("P2").labor_rate == Decimal("50")
        assert config.activity_rate("P1").labor_rate == Decimal("45")

    def test_no_rates(self):
        assert parse_config(_minimal()).activity_rate("P1") is None

    def test_yaml_float_keeps_written_digits(self):
        config = parse_config(_minimal(costing_sheets=[
            {"code": "S", "lines": [{"name": "oh", "base": "material", "rate": 12.5}]},
        ]))
        assert config.costing_sheet("S").lines[0].rate == Decimal("12.5")

    def test_empty_views_rejected(self):
        with pytest.raises(ValueError):
            parse_config(_minimal(valuation_views=[]))

    def test_duplicate_views_rejected(self):
        with pytest.raises(ValueError):
            parse_config(_minimal(valuation_views=[
                {"view": "legal", "price_method": "moving_average"},
                {"view": "legal", "price_method": "standard"},
            ]))

    def test_only_actual_views_rejected(self):
        with pytest.raises(ValueError):
            parse_config(_minimal(valuation_views=[
                {"view": "legal", "price_method": "actual"},
            ]))

    def test_unknown_price_method_rejected(self):
        with pytest.raises(ValueError):
            parse_config(_minimal(valuation_views=[
                {"view": "legal", "price_method": "fifo"},
            ]))

    def test_unknown_overhead_base_rejected(self):
        with pytest.raises(ValueError):
            parse_config(_minimal(costing_sheets=[
                {"code": "S", "lines": [{"name": "oh", "base": "revenue", "rate": "5"}]},
            ]))

    @pytest.mark.parametrize("key", ["config_id", "currency", "valuation_views"])
    def test_required_keys(self, key):
        data = _minimal()
        del data[key]
        with pytest.raises(KeyError):
            parse_config(data)


class TestChecksum:
    def test_key_order_does_not_matter(self):
        assert compute_checksum({"a": 1, "b": 2}) == compute_checksum({"b": 2, "a": 1})

    def test_content_matters(self):
        assert compute_checksum({"a": 1}) != compute_checksum({"a": 2})
