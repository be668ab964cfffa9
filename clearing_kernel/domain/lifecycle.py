"""
Lifecycle -- state machines for invoices, payments, disputes, settlement
batches and escrow reservations.

Responsibility:
    Single source of truth for which status changes are legal.  The ledger
    store and kernel services call ``require_transition`` before every
    status write; nothing else in the system decides transition legality.

Architecture position:
    Kernel > Domain -- pure, zero I/O.

Invariants enforced:
    - Terminal statuses have no outgoing edges.
    - A status may not transition to itself (writes that change nothing
      are filtered out by the caller before reaching this module).
"""

from enum import Enum
from typing import TypeVar

from clearing_kernel.domain.values import (
    DisputeStatus,
    InvoiceStatus,
    LegStatus,
    PaymentStatus,
    ReservationStatus,
    SettlementStatus,
)
from clearing_kernel.exceptions import InvalidTransitionError

S = TypeVar("S", bound=Enum)

INVOICE_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.PENDING: frozenset({
        InvoiceStatus.MATCHED,
        InvoiceStatus.PARTIALLY_MATCHED,
        InvoiceStatus.DISPUTED,
    }),
    InvoiceStatus.PARTIALLY_MATCHED: frozenset({
        InvoiceStatus.MATCHED,
        InvoiceStatus.DISPUTED,
        InvoiceStatus.PAID,
        InvoiceStatus.PARTIALLY_PAID,
    }),
    InvoiceStatus.MATCHED: frozenset({
        InvoiceStatus.PAID,
        InvoiceStatus.PARTIALLY_PAID,
        InvoiceStatus.DISPUTED,
    }),
    InvoiceStatus.DISPUTED: frozenset({
        InvoiceStatus.MATCHED,
        InvoiceStatus.PAID,
        InvoiceStatus.PARTIALLY_PAID,
    }),
    InvoiceStatus.PARTIALLY_PAID: frozenset({InvoiceStatus.PAID}),
    InvoiceStatus.PAID: frozenset(),
}

PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.PROCESSING,
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
    }),
    PaymentStatus.PROCESSING: frozenset({
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
    }),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REVERSED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REVERSED: frozenset(),
}

DISPUTE_TRANSITIONS: dict[DisputeStatus, frozenset[DisputeStatus]] = {
    DisputeStatus.OPEN: frozenset({
        DisputeStatus.UNDER_REVIEW,
        DisputeStatus.ESCALATED,
        DisputeStatus.CLOSED,
    }),
    DisputeStatus.UNDER_REVIEW: frozenset({
        DisputeStatus.EVIDENCE_REQUESTED,
        DisputeStatus.RESOLVED,
        DisputeStatus.ESCALATED,
        DisputeStatus.CLOSED,
    }),
    DisputeStatus.EVIDENCE_REQUESTED: frozenset({
        DisputeStatus.UNDER_REVIEW,
        DisputeStatus.ESCALATED,
        DisputeStatus.CLOSED,
    }),
    DisputeStatus.ESCALATED: frozenset({
        DisputeStatus.RESOLVED,
        DisputeStatus.CLOSED,
    }),
    DisputeStatus.RESOLVED: frozenset({DisputeStatus.CLOSED}),
    DisputeStatus.CLOSED: frozenset(),
}

SETTLEMENT_TRANSITIONS: dict[SettlementStatus, frozenset[SettlementStatus]] = {
    SettlementStatus.COMPUTED: frozenset({
        SettlementStatus.APPROVED,
        SettlementStatus.REJECTED,
    }),
    SettlementStatus.APPROVED: frozenset({SettlementStatus.EXECUTING}),
    SettlementStatus.EXECUTING: frozenset({
        SettlementStatus.EXECUTED,
        SettlementStatus.FAILED,
    }),
    SettlementStatus.EXECUTED: frozenset(),
    SettlementStatus.FAILED: frozenset(),
    SettlementStatus.REJECTED: frozenset(),
}

LEG_TRANSITIONS: dict[LegStatus, frozenset[LegStatus]] = {
    LegStatus.PENDING: frozenset({LegStatus.COMMITTED, LegStatus.FAILED, LegStatus.ROLLED_BACK}),
    LegStatus.COMMITTED: frozenset({LegStatus.ROLLED_BACK}),
    LegStatus.FAILED: frozenset(),
    LegStatus.ROLLED_BACK: frozenset(),
}

RESERVATION_TRANSITIONS: dict[ReservationStatus, frozenset[ReservationStatus]] = {
    ReservationStatus.ACTIVE: frozenset({ReservationStatus.RELEASED, ReservationStatus.EXPIRED}),
    ReservationStatus.RELEASED: frozenset(),
    ReservationStatus.EXPIRED: frozenset(),
}

# Live batches hold the settlement period lock.
LOCK_HOLDING_STATUSES = frozenset({
    SettlementStatus.COMPUTED,
    SettlementStatus.APPROVED,
    SettlementStatus.EXECUTING,
})

OPEN_DISPUTE_STATUSES = frozenset({
    DisputeStatus.OPEN,
    DisputeStatus.UNDER_REVIEW,
    DisputeStatus.EVIDENCE_REQUESTED,
    DisputeStatus.ESCALATED,
})


def can_transition(table: dict[S, frozenset[S]], current: S, target: S) -> bool:
    return target in table.get(current, frozenset())


def is_terminal(table: dict[S, frozenset[S]], status: S) -> bool:
    return not table.get(status)


def require_transition(
    table: dict[S, frozenset[S]],
    entity_type: str,
    entity_id: object,
    current: S,
    target: S,
) -> None:
    """
    Raise unless ``current -> target`` is an edge of ``table``.

    Raises:
        InvalidTransitionError: With both statuses as structured data.
    """
    if not can_transition(table, current, target):
        raise InvalidTransitionError(
            entity_type=entity_type,
            entity_id=str(entity_id),
            from_status=current.value,
            to_status=target.value,
        )
