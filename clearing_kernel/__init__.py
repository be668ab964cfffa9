"""
Clearing Kernel

Persistence, domain types and kernel services for energy-sector invoice
reconciliation and multilateral settlement:
- Append-only delivery evidence and hash-chained audit trail
- Invoice, payment, dispute and settlement state machines
- Escrow reservations with expiry
- Flush-only services; callers own transactions
"""

__version__ = "0.1.0"
