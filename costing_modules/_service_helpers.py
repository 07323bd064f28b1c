"""
Shared helpers for module services.

Used by costing_modules/*/service.py to own the transaction boundary of a
public operation: commit on success, roll back and re-raise on failure.
Services built with ``auto_commit=False`` (by the period close
orchestrator) leave both to their caller.

Also builds the extension attribute registry from configuration.

Architecture: Modules layer. Imports only from costing_kernel and
costing_config.
"""

from __future__ import annotations

import time
from collections.abc import Generator
from contextlib import contextmanager
from logging import Logger

from sqlalchemy.orm import Session

from costing_config import CostingConfig
from costing_kernel.domain.extensions import (
    AttributeDef,
    AttributeType,
    ExtensionSchemaRegistry,
)


@contextmanager
def transaction_boundary(
    session: Session,
    auto_commit: bool,
    logger: Logger,
    operation: str,
    **fields: object,
) -> Generator[None, None, None]:
    """Commit on success, roll back on failure; logs ``<operation>_failed``."""
    t0 = time.monotonic()
    try:
        yield
        if auto_commit:
            session.commit()
    except Exception:
        if auto_commit:
            session.rollback()
        logger.error(
            f"{operation}_failed",
            extra={
                "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                **{k: str(v) for k, v in fields.items()},
            },
            exc_info=True,
        )
        raise


def build_extension_registry(config: CostingConfig) -> ExtensionSchemaRegistry:
    """Registry holding every extension schema declared in configuration."""
    registry = ExtensionSchemaRegistry()
    for schema in config.extension_schemas:
        registry.register(
            schema.tenant_id,
            schema.entity_type,
            [
                AttributeDef(
                    name=attr.name,
                    attribute_type=AttributeType(attr.attribute_type),
                    required=attr.required,
                    max_length=attr.max_length,
                )
                for attr in schema.attributes
            ],
        )
    return registry
