"""
Costing Kernel - shared foundations for the product costing engine.

Provides the pieces every costing module builds on:
- Typed exceptions with machine-readable codes
- Structured JSON logging
- Money and currency value objects with explicit rounding
- Injectable clocks
- SQLAlchemy base classes, engine/session management and immutability guards
- Fiscal periods with the period-close lock
"""

__version__ = "0.1.0"
