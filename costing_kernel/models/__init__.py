"""Kernel ORM models shared by every costing module."""

from costing_kernel.models.fiscal_period import FiscalPeriod, PeriodStatus
from costing_kernel.services.sequence_service import SequenceCounter

__all__ = ["FiscalPeriod", "PeriodStatus", "SequenceCounter"]
