"""Utility functions for the clearing kernel."""

from clearing_kernel.utils.hashing import (
    canonicalize_json,
    hash_audit_event,
    hash_invoice_content,
    hash_payload,
    hash_settlement_legs,
)

__all__ = [
    "canonicalize_json",
    "hash_audit_event",
    "hash_invoice_content",
    "hash_payload",
    "hash_settlement_legs",
]
