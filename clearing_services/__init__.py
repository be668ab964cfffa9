"""
clearing_services -- Package init and public API.

Responsibility:
    Stateful orchestration services that compose the pure engines
    (clearing_engines/) with database sessions, escrow and the transfer
    gateway.  This is the only layer that reads runtime configuration
    through ``clearing_config``.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction (enforced by tests/architecture/test_layer_boundaries.py):
        clearing_services/ -> clearing_engines/  (allowed)
        clearing_services/ -> clearing_kernel/   (allowed)
        clearing_engines/  -> clearing_services/ (FORBIDDEN)
        clearing_kernel/   -> clearing_services/ (FORBIDDEN)
"""

from clearing_services.reconciliation_service import (
    ReconciliationRunResult,
    ReconciliationService,
)
from clearing_services.settlement_orchestrator import (
    ApprovalResult,
    ComputeResult,
    ExecutionResult,
    SettlementOrchestrator,
    period_bounds,
)
from clearing_services.transfer_gateway import (
    LedgerTransferGateway,
    TransferGateway,
    TransferReceipt,
)

__all__ = [
    "ApprovalResult",
    "ComputeResult",
    "ExecutionResult",
    "LedgerTransferGateway",
    "ReconciliationRunResult",
    "ReconciliationService",
    "SettlementOrchestrator",
    "TransferGateway",
    "TransferReceipt",
    "period_bounds",
]
