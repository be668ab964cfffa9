"""ORM models for the clearing kernel."""

from clearing_kernel.models.audit_event import AuditAction, AuditEvent
from clearing_kernel.models.contract import Contract
from clearing_kernel.models.delivery import Delivery
from clearing_kernel.models.dispute import Dispute
from clearing_kernel.models.escrow import EscrowAccount, EscrowReservation
from clearing_kernel.models.invoice import Invoice
from clearing_kernel.models.party import Party
from clearing_kernel.models.payment import Payment
from clearing_kernel.models.sequence import SequenceCounter
from clearing_kernel.models.settlement import (
    SettlementApproval,
    SettlementBatch,
    SettlementBatchInvoice,
    SettlementLeg,
    SettlementPeriodLock,
)

__all__ = [
    "AuditAction",
    "AuditEvent",
    "Contract",
    "Delivery",
    "Dispute",
    "EscrowAccount",
    "EscrowReservation",
    "Invoice",
    "Party",
    "Payment",
    "SequenceCounter",
    "SettlementApproval",
    "SettlementBatch",
    "SettlementBatchInvoice",
    "SettlementLeg",
    "SettlementPeriodLock",
]
