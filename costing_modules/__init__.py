"""
Costing Modules.

Stateful services over the costing kernel and the pure engines.
Each module contains:
- Domain models (frozen DTOs)
- ORM persistence and its immutability rules
- A service owning the module's transaction boundaries

Modules:
- Estimation: Lot-sized cost estimates, release and standard costs
- Ledger: Material valuation store, prices, balances, actual cost
- Variance: Standard-vs-actual variances, report, settlement
- WIP: Production-order cost accumulation and WIP positions
- Landed Cost: Acquisition charges allocated over inbound lines
"""
