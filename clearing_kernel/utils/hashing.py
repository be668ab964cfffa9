"""
Deterministic hashing utilities.

All hashing in the clearing kernel must be deterministic and reproducible.
This module provides the canonical hashing functions used throughout.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """
    Custom JSON serializer for types not natively supported.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, Decimal):
        # Trailing zeros removed so 10.50 and 10.5 hash identically
        return format(obj.normalize(), "f")
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, bytes):
        return obj.hex()

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to a canonical JSON string.

    Keys are sorted, whitespace is removed, and Decimal, datetime,
    UUID and Enum values have a single representation.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def to_json_safe(data: Any) -> Any:
    """Round-trip ``data`` through the canonical encoder for JSON columns."""
    return json.loads(canonicalize_json(data))


def hash_payload(payload: dict | list) -> str:
    """
    Compute SHA-256 hash of a payload.

    Returns:
        Hex-encoded SHA-256 hash (64 characters).
    """
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_audit_event(
    entity_type: str,
    entity_id: str,
    action: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """
    Compute hash for an audit event.

    The hash includes all key fields plus the previous event's hash,
    creating a tamper-evident chain.
    """
    components = [
        entity_type,
        str(entity_id),
        action,
        payload_hash,
        prev_hash or "GENESIS",
    ]
    data = "|".join(components)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def hash_invoice_content(
    invoice_ref: str,
    contract_id: UUID,
    issuer_id: UUID,
    counterparty_id: UUID,
    period_start: date,
    period_end: date,
    currency: str,
    total_amount: Decimal,
    tax_amount: Decimal,
    line_items: dict,
) -> str:
    """
    Content hash over the immutable fields of an invoice.

    Computed once at issue time and stored; re-computed to detect
    modification of financial fields after the fact.
    """
    return hash_payload(
        {
            "invoice_ref": invoice_ref,
            "contract_id": contract_id,
            "issuer_id": issuer_id,
            "counterparty_id": counterparty_id,
            "period_start": period_start,
            "period_end": period_end,
            "currency": currency,
            "total_amount": total_amount,
            "tax_amount": tax_amount,
            "line_items": line_items,
        }
    )


def hash_settlement_legs(legs: list[dict]) -> str:
    """
    Digest of a batch's settlement legs, ordered by leg sequence.

    Used to prove the legs executed are the legs that were approved.
    """
    ordered = sorted(legs, key=lambda leg: leg["leg_seq"])
    return hash_payload({"legs": ordered})
