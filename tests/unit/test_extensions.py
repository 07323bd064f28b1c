"""
Tests for tenant extension attributes.
"""

from datetime import date
from decimal import Decimal

import pytest

from costing_kernel.domain.extensions import (
    AttributeDef,
    AttributeType,
    ExtensionSchemaRegistry,
)
from costing_kernel.exceptions import ExtensionAttributeError


@pytest.fixture
def registry():
    reg = ExtensionSchemaRegistry()
    reg.register("*", "landed_cost_document", [
        AttributeDef("tariff_code", AttributeType.STRING, required=True, max_length=10),
        AttributeDef("declared_value", AttributeType.DECIMAL),
        AttributeDef("containers", AttributeType.INTEGER),
        AttributeDef("bonded", AttributeType.BOOLEAN),
        AttributeDef("arrival", AttributeType.DATE),
    ])
    reg.register("ACME", "landed_cost_document", [
        AttributeDef("broker", AttributeType.STRING),
    ])
    return reg


class TestExtensionValidation:
    def test_normalizes_values(self, registry):
        result = registry.validate("T1", "landed_cost_document", {
            "tariff_code": "8471.30",
            "declared_value": Decimal("1200.50"),
            "containers": 2,
            "bonded": True,
            "arrival": date(2024, 1, 15),
        })
        assert result == {
            "tariff_code": "8471.30",
            "declared_value": "1200.50",
            "containers": 2,
            "bonded": True,
            "arrival": "2024-01-15",
        }

    def test_iso_date_string_accepted(self, registry):
        result = registry.validate(
            "T1", "landed_cost_document", {"tariff_code": "X", "arrival": "2024-02-01"}
        )
        assert result["arrival"] == "2024-02-01"

    def test_tenant_schema_overrides_wildcard(self, registry):
        assert registry.validate("ACME", "landed_cost_document", {"broker": "B1"}) == {
            "broker": "B1"
        }
        with pytest.raises(ExtensionAttributeError):
            registry.validate("ACME", "landed_cost_document", {"tariff_code": "X"})

    def test_unknown_attribute(self, registry):
        with pytest.raises(ExtensionAttributeError):
            registry.validate("T1", "landed_cost_document", {"tariff_code": "X", "color": "red"})

    def test_missing_required(self, registry):
        with pytest.raises(ExtensionAttributeError):
            registry.validate("T1", "landed_cost_document", {"containers": 1})

    def test_string_too_long(self, registry):
        with pytest.raises(ExtensionAttributeError):
            registry.validate("T1", "landed_cost_document", {"tariff_code": "X" * 11})

    @pytest.mark.parametrize("name,value", [
        ("declared_value", 1.5),
        ("containers", True),
        ("containers", "2"),
        ("bonded", "yes"),
        ("arrival", "15/01/2024"),
    ])
    def test_wrong_type(self, registry, name, value):
        with pytest.raises(ExtensionAttributeError):
            registry.validate("T1", "landed_cost_document", {"tariff_code": "X", name: value})

    def test_no_schema_accepts_only_empty(self, registry):
        assert registry.validate("T1", "cost_estimate", None) == {}
        with pytest.raises(ExtensionAttributeError):
            registry.validate("T1", "cost_estimate", {"anything": "x"})
