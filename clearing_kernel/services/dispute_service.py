"""
DisputeService -- manual dispute workflow.

Responsibility:
    Raises disputes against invoices on behalf of a party and walks them
    through review, evidence requests, escalation, resolution and closure.
    Reconciliation raises its own disputes directly through the ledger
    store; this service is the operator-facing path.

Architecture position:
    Kernel > Services.  Writes go through ``LedgerStore`` so every status
    change is validated against the dispute state machine and audited.

Invariants enforced:
    - ``OPEN -> UNDER_REVIEW -> {EVIDENCE_REQUESTED -> UNDER_REVIEW}* ->
      {RESOLVED, ESCALATED, CLOSED}``; CLOSED is terminal.
    - Raising a dispute moves the invoice to DISPUTED when its lifecycle
      allows it.
    - An invoice leaves DISPUTED only when its last open dispute is settled
      and it still carries a full match annotation.

Failure modes:
    - InvoiceNotFoundError / DisputeNotFoundError for unknown ids.
    - InvalidTransitionError for illegal dispute status changes.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from clearing_kernel.domain.clock import Clock, SystemClock
from clearing_kernel.domain.dtos import DisputeRecord, NewDispute
from clearing_kernel.domain.lifecycle import INVOICE_TRANSITIONS, can_transition
from clearing_kernel.domain.values import DisputeReason, DisputeStatus, InvoiceStatus
from clearing_kernel.exceptions import DisputeNotFoundError, InvoiceNotFoundError
from clearing_kernel.logging_config import get_logger
from clearing_kernel.selectors.ledger_selector import LedgerSelector
from clearing_kernel.services.auditor_service import AuditorService
from clearing_kernel.services.ledger_store import LedgerStore

logger = get_logger("services.dispute")

DEFAULT_SLA_DAYS = 7
HIGH_PRIORITY_AMOUNT = Decimal("100000000")
MEDIUM_PRIORITY_AMOUNT = Decimal("50000000")


def dispute_priority(
    amount: Decimal | None,
    high_threshold: Decimal = HIGH_PRIORITY_AMOUNT,
    medium_threshold: Decimal = MEDIUM_PRIORITY_AMOUNT,
) -> str:
    """Triage label for a dispute by the amount it puts at stake."""
    if amount is None:
        return "low"
    if amount > high_threshold:
        return "high"
    if amount > medium_threshold:
        return "medium"
    return "low"


class DisputeService:
    """
    Operator-facing dispute lifecycle.

    Contract:
        Every method returns the dispute's fresh ``DisputeRecord``.

    Non-goals:
        - Does NOT call ``session.commit()``.
        - Does NOT adjust invoice amounts; a ruling amount is recorded for
          the payment side to act on.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        clock: Clock | None = None,
        sla_days: int = DEFAULT_SLA_DAYS,
    ):
        self._clock = clock or SystemClock()
        self._selector = LedgerSelector(session)
        self._store = LedgerStore(session, auditor, self._clock)
        self._sla_days = sla_days

    def _require(self, dispute_id: UUID) -> DisputeRecord:
        dispute = self._selector.get_dispute(dispute_id)
        if dispute is None:
            raise DisputeNotFoundError(str(dispute_id))
        return dispute

    def raise_dispute(
        self,
        invoice_id: UUID,
        raised_by_id: UUID,
        reason: DisputeReason,
        description: str,
        actor_id: UUID,
        amount_in_dispute: Decimal | None = None,
    ) -> DisputeRecord:
        """
        Open a dispute against an invoice.

        The receiving party is whichever side of the invoice did not raise
        it.  The SLA deadline is ``now + sla_days``.
        """
        invoice = self._selector.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))

        received_by_id = (
            invoice.counterparty_id if raised_by_id == invoice.issuer_id else invoice.issuer_id
        )
        dispute_id = self._store.create_dispute(
            NewDispute(
                invoice_id=invoice_id,
                contract_id=invoice.contract_id,
                raised_by_id=raised_by_id,
                received_by_id=received_by_id,
                reason_code=reason,
                description=description,
                sla_deadline=self._clock.now() + timedelta(days=self._sla_days),
                amount_in_dispute=amount_in_dispute,
            ),
            actor_id,
        )

        if can_transition(INVOICE_TRANSITIONS, invoice.status, InvoiceStatus.DISPUTED):
            self._store.update_invoice_status(invoice_id, InvoiceStatus.DISPUTED, actor_id)
        elif invoice.status != InvoiceStatus.DISPUTED:
            logger.info(
                "dispute_invoice_status_kept",
                extra={"invoice_id": str(invoice_id), "invoice_status": invoice.status.value},
            )
        return self._require(dispute_id)

    def start_review(self, dispute_id: UUID, actor_id: UUID) -> DisputeRecord:
        self._store.update_dispute_status(dispute_id, DisputeStatus.UNDER_REVIEW, actor_id)
        return self._require(dispute_id)

    def request_evidence(self, dispute_id: UUID, actor_id: UUID) -> DisputeRecord:
        self._store.update_dispute_status(dispute_id, DisputeStatus.EVIDENCE_REQUESTED, actor_id)
        return self._require(dispute_id)

    def escalate(self, dispute_id: UUID, actor_id: UUID) -> DisputeRecord:
        self._store.update_dispute_status(dispute_id, DisputeStatus.ESCALATED, actor_id)
        return self._require(dispute_id)

    def resolve(
        self,
        dispute_id: UUID,
        actor_id: UUID,
        ruling_amount: Decimal | None = None,
    ) -> DisputeRecord:
        """Record the ruling and release the invoice if nothing else is open."""
        self._store.update_dispute_status(
            dispute_id,
            DisputeStatus.RESOLVED,
            actor_id,
            ruling_amount=ruling_amount,
            resolved_at=self._clock.now(),
        )
        dispute = self._require(dispute_id)
        self._release_invoice(dispute.invoice_id, actor_id)
        return dispute

    def close(self, dispute_id: UUID, actor_id: UUID) -> DisputeRecord:
        current = self._require(dispute_id)
        self._store.update_dispute_status(
            dispute_id,
            DisputeStatus.CLOSED,
            actor_id,
            resolved_at=None if current.resolved_at else self._clock.now(),
        )
        dispute = self._require(dispute_id)
        self._release_invoice(dispute.invoice_id, actor_id)
        return dispute

    def find_sla_breaches(self, as_of: datetime | None = None) -> list[DisputeRecord]:
        """Open disputes whose SLA deadline has passed."""
        breaches = self._selector.find_sla_breaches(as_of or self._clock.now())
        if breaches:
            logger.warning(
                "dispute_sla_breaches",
                extra={"count": len(breaches), "dispute_refs": [d.dispute_ref for d in breaches]},
            )
        return breaches

    def _release_invoice(self, invoice_id: UUID, actor_id: UUID) -> None:
        invoice = self._selector.get_invoice(invoice_id)
        if invoice is None or invoice.status != InvoiceStatus.DISPUTED:
            return
        if self._selector.find_open_disputes(invoice_id):
            return
        if invoice.confidence_score is None or not invoice.matched_delivery_ids:
            # Stays DISPUTED until reconciled evidence or payment moves it.
            return
        self._store.update_invoice_status(invoice_id, InvoiceStatus.MATCHED, actor_id)
