"""
Extension attributes -- typed custom fields on costing entities.

Tenants attach their own attributes (for example a customs tariff number on
a landed-cost document) without schema changes. Each (tenant, entity type)
pair has a registered set of AttributeDef; values are validated and
normalized against it before the entity is persisted, and stored as a JSON
map next to the entity.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from costing_kernel.exceptions import ExtensionAttributeError


class AttributeType(str, Enum):
    STRING = "string"
    DECIMAL = "decimal"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    DATE = "date"


@dataclass(frozen=True)
class AttributeDef:
    name: str
    attribute_type: AttributeType
    required: bool = False
    max_length: int | None = None


def _coerce(entity_type: str, definition: AttributeDef, value: Any) -> Any:
    """Validate one value and return its JSON-safe form."""
    kind = definition.attribute_type
    if kind is AttributeType.STRING:
        if not isinstance(value, str):
            raise ExtensionAttributeError(entity_type, definition.name, "expected string")
        if definition.max_length is not None and len(value) > definition.max_length:
            raise ExtensionAttributeError(
                entity_type,
                definition.name,
                f"longer than {definition.max_length} characters",
            )
        return value
    if kind is AttributeType.BOOLEAN:
        if not isinstance(value, bool):
            raise ExtensionAttributeError(entity_type, definition.name, "expected boolean")
        return value
    if kind is AttributeType.INTEGER:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ExtensionAttributeError(entity_type, definition.name, "expected integer")
        return value
    if kind is AttributeType.DECIMAL:
        if isinstance(value, bool | float):
            raise ExtensionAttributeError(entity_type, definition.name, "expected decimal")
        try:
            return str(Decimal(str(value)))
        except InvalidOperation as e:
            raise ExtensionAttributeError(
                entity_type, definition.name, "expected decimal"
            ) from e
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        try:
            return date.fromisoformat(value).isoformat()
        except ValueError as e:
            raise ExtensionAttributeError(
                entity_type, definition.name, "expected ISO date"
            ) from e
    raise ExtensionAttributeError(entity_type, definition.name, "expected date")


class ExtensionSchemaRegistry:
    """Per-tenant, per-entity attribute schemas."""

    def __init__(self) -> None:
        self._schemas: dict[tuple[str, str], dict[str, AttributeDef]] = {}

    def register(
        self,
        tenant_id: str,
        entity_type: str,
        definitions: list[AttributeDef] | tuple[AttributeDef, ...],
    ) -> None:
        self._schemas[(tenant_id, entity_type)] = {d.name: d for d in definitions}

    def schema_for(self, tenant_id: str, entity_type: str) -> dict[str, AttributeDef]:
        return dict(self._schemas.get((tenant_id, entity_type), {}))

    def validate(
        self,
        tenant_id: str,
        entity_type: str,
        attributes: dict[str, Any] | None,
    ) -> dict[str, Any]:
        """
        Validate an attribute map and return its normalized JSON form.

        Unknown keys, wrong value types and missing required keys raise
        ExtensionAttributeError. An entity with no registered schema
        accepts only an empty map. Schemas registered for tenant "*" apply to
        tenants without their own.
        """
        attributes = attributes or {}
        schema = self._schemas.get((tenant_id, entity_type))
        if schema is None:
            schema = self._schemas.get(("*", entity_type), {})

        for name in attributes:
            if name not in schema:
                raise ExtensionAttributeError(entity_type, name, "unknown attribute")
        for name, definition in schema.items():
            if definition.required and attributes.get(name) is None:
                raise ExtensionAttributeError(entity_type, name, "required")

        return {
            name: _coerce(entity_type, schema[name], value)
            for name, value in attributes.items()
            if value is not None
        }
