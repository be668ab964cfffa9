"""
ORM-level immutability enforcement.

SQLAlchemy fires ``before_update`` / ``before_delete`` mapper events before
the SQL is sent.  The listeners below reject changes to records that are
evidence or history:

Entity              | Rule
--------------------|--------------------------------------------------
Delivery            | never updated, never deleted
AuditEvent          | never updated, never deleted
SettlementApproval  | never updated, never deleted
Dispute             | never deleted (closing is a status change)
Party               | never deleted once invoices reference it

Usage:
    register_immutability_listeners()    # once at startup
    unregister_immutability_listeners()  # tests only
"""

from sqlalchemy import event, select

from clearing_kernel.exceptions import ImmutabilityViolationError
from clearing_kernel.logging_config import get_logger
from clearing_kernel.models.audit_event import AuditEvent
from clearing_kernel.models.delivery import Delivery
from clearing_kernel.models.dispute import Dispute
from clearing_kernel.models.invoice import Invoice
from clearing_kernel.models.party import Party
from clearing_kernel.models.settlement import SettlementApproval

logger = get_logger("db.immutability")


def _block(entity_type: str, target, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_delivery_update(mapper, connection, target):
    _block("Delivery", target, "UPDATE", "Deliveries are append-only")


def _check_delivery_delete(mapper, connection, target):
    _block("Delivery", target, "DELETE", "Deliveries are append-only")


def _check_audit_event_update(mapper, connection, target):
    _block("AuditEvent", target, "UPDATE", "Audit events are immutable and cannot be modified")


def _check_audit_event_delete(mapper, connection, target):
    _block("AuditEvent", target, "DELETE", "Audit events cannot be deleted")


def _check_approval_update(mapper, connection, target):
    _block("SettlementApproval", target, "UPDATE", "Approvals cannot be altered once given")


def _check_approval_delete(mapper, connection, target):
    _block("SettlementApproval", target, "DELETE", "Approvals cannot be withdrawn")


def _check_dispute_delete(mapper, connection, target):
    _block("Dispute", target, "DELETE", "Disputes are closed, never deleted")


def _check_party_delete(mapper, connection, target):
    referenced = connection.execute(
        select(Invoice.id)
        .where((Invoice.issuer_id == target.id) | (Invoice.counterparty_id == target.id))
        .limit(1)
    ).first()
    if referenced is not None:
        _block("Party", target, "DELETE", "Party has financial history")


_LISTENERS = (
    (Delivery, "before_update", _check_delivery_update),
    (Delivery, "before_delete", _check_delivery_delete),
    (AuditEvent, "before_update", _check_audit_event_update),
    (AuditEvent, "before_delete", _check_audit_event_delete),
    (SettlementApproval, "before_update", _check_approval_update),
    (SettlementApproval, "before_delete", _check_approval_delete),
    (Dispute, "before_delete", _check_dispute_delete),
    (Party, "before_delete", _check_party_delete),
)


def register_immutability_listeners() -> None:
    """Register all immutability listeners (idempotent)."""
    for target, identifier, fn in _LISTENERS:
        if not event.contains(target, identifier, fn):
            event.listen(target, identifier, fn)


def unregister_immutability_listeners() -> None:
    """Remove all immutability listeners. FOR TESTING ONLY."""
    for target, identifier, fn in _LISTENERS:
        if event.contains(target, identifier, fn):
            event.remove(target, identifier, fn)
