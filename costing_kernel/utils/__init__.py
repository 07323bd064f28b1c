"""Utility modules for the costing kernel."""

from costing_kernel.utils.idempotency import deterministic_id

__all__ = ["deterministic_id"]
