"""
Ledger Core

Balance-consistency core for a small banking system: deposits, withdrawals
and transfers applied through optimistic compare-and-set updates, with every
movement recorded as an immutable transaction.
"""

__version__ = "1.0.0"
