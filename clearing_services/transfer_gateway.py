"""
clearing_services.transfer_gateway -- the seam through which settlement
legs move money.

Responsibility:
    ``TransferGateway`` is what the settlement orchestrator calls once per
    leg.  The default ``LedgerTransferGateway`` books the transfer inside
    the clearing ledger only (the escrow pool is the source of funds) and
    always succeeds; deployments that instruct a bank plug in their own.

Invariants enforced:
    - A gateway reports failure through ``TransferReceipt.success``; it
      never commits or rolls back the caller's session.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from clearing_kernel.domain.dtos import SettlementBatchRecord, SettlementLegRecord
from clearing_kernel.logging_config import get_logger

logger = get_logger("services.transfer_gateway")


@dataclass(frozen=True)
class TransferReceipt:
    success: bool
    bank_reference: str = ""
    error: str = ""


class TransferGateway(ABC):
    """Moves the funds for one settlement leg."""

    @abstractmethod
    def transfer(self, batch: SettlementBatchRecord, leg: SettlementLegRecord) -> TransferReceipt:
        ...


class LedgerTransferGateway(TransferGateway):
    """In-ledger transfer: succeeds with a reference derived from the batch and leg."""

    def transfer(self, batch: SettlementBatchRecord, leg: SettlementLegRecord) -> TransferReceipt:
        reference = f"{batch.batch_ref}-L{leg.leg_seq:03d}"
        logger.debug(
            "ledger_transfer_booked",
            extra={"bank_reference": reference, "amount": str(leg.amount)},
        )
        return TransferReceipt(success=True, bank_reference=reference)
