"""Pure domain value objects for the costing kernel (no I/O)."""

from costing_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from costing_kernel.domain.values import Currency, Money, round_price

__all__ = [
    "Clock",
    "Currency",
    "DeterministicClock",
    "Money",
    "SystemClock",
    "round_price",
]
