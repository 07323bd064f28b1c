"""Database layer - engine, base classes, immutability and versioning."""

from costing_kernel.db.base import (
    SYSTEM_ACTOR_ID,
    UUID,
    Base,
    ExactDecimal,
    TrackedBase,
    UUIDString,
)
from costing_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    init_engine_from_url,
    session_scope,
)

__all__ = [
    "SYSTEM_ACTOR_ID",
    "UUID",
    "Base",
    "ExactDecimal",
    "TrackedBase",
    "UUIDString",
    "create_tables",
    "get_engine",
    "get_session",
    "init_engine_from_url",
    "session_scope",
]
