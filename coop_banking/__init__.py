"""
Cooperative Banking Core

Multi-tenant transaction processing for cooperative banks: per-bank scoped
accounts, atomic deposits, withdrawals and transfers, an immutable
transaction ledger and a hash-chained audit trail.
"""

__version__ = "1.0.0"
