"""Selectors for the clearing kernel (read side)."""

from clearing_kernel.selectors.ledger_selector import LedgerSelector

__all__ = ["LedgerSelector"]
