"""
Billing Kernel

The transactional core of the billing application:
- Sequential, branch/fiscal-year scoped document numbering
- Intra-state vs inter-state GST computation
- Stock and reservation counters driven by document lifecycle
- Append-only party ledger with running balances and advances
"""

__version__ = "0.1.0"
