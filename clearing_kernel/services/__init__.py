"""Services for the clearing kernel (write side)."""

from clearing_kernel.services.auditor_service import AuditorService, AuditTrace, AuditTraceEntry
from clearing_kernel.services.dispute_service import DisputeService, dispute_priority
from clearing_kernel.services.escrow_service import EscrowBalance, EscrowService, ReservationResult
from clearing_kernel.services.ingestor_service import IngestorService
from clearing_kernel.services.ledger_store import BatchSpec, LedgerStore, LegSpec
from clearing_kernel.services.payment_service import PaymentService
from clearing_kernel.services.sequence_service import SequenceService

__all__ = [
    "AuditorService",
    "AuditTrace",
    "AuditTraceEntry",
    "BatchSpec",
    "DisputeService",
    "EscrowBalance",
    "EscrowService",
    "IngestorService",
    "LedgerStore",
    "LegSpec",
    "PaymentService",
    "ReservationResult",
    "SequenceService",
    "dispute_priority",
]
