"""
LedgerStore -- command side of the ledger: every persisted status change.

Responsibility:
    The only writer of invoice, dispute, payment and settlement statuses.
    Each write validates the relevant state machine, flushes, and records
    exactly one audit event.  A write that would change nothing is a no-op
    and records nothing, which is what makes reconciliation re-runs
    idempotent.

Architecture position:
    Kernel > Services.  Called by the reconciliation service, the
    settlement orchestrator and the kernel's payment and dispute services.

Invariants enforced:
    - Invoice, payment, dispute, batch and leg transitions follow
      ``clearing_kernel.domain.lifecycle``.
    - MATCHED invoices always carry a confidence score and delivery ids.
    - Optimistic concurrency on invoices: a stale version raises
      ``OptimisticLockError`` and nothing is written.
    - At most one live batch per settlement period (unique lock row).

Failure modes:
    - *NotFoundError for unknown ids.
    - InvalidTransitionError for illegal status changes.
    - OptimisticLockError on version conflicts.
    - PeriodLockedError when a period already has a live batch.

Audit relevance:
    Every successful mutation here is paired with an AuditEvent carrying
    old and new values.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError as SAIntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from clearing_kernel.domain.clock import Clock, SystemClock
from clearing_kernel.domain.dtos import (
    InvoiceRecord,
    NewDispute,
    NewPayment,
    SettlementBatchRecord,
)
from clearing_kernel.domain.lifecycle import (
    DISPUTE_TRANSITIONS,
    INVOICE_TRANSITIONS,
    LEG_TRANSITIONS,
    PAYMENT_TRANSITIONS,
    SETTLEMENT_TRANSITIONS,
    require_transition,
)
from clearing_kernel.domain.values import (
    DisputeStatus,
    InvoiceStatus,
    LegStatus,
    PaymentStatus,
    SettlementStatus,
)
from clearing_kernel.exceptions import (
    DisputeNotFoundError,
    InvoiceNotFoundError,
    OptimisticLockError,
    PaymentNotFoundError,
    PeriodLockedError,
    SettlementBatchNotFoundError,
    ValidationError,
)
from clearing_kernel.logging_config import get_logger
from clearing_kernel.models.dispute import Dispute
from clearing_kernel.models.invoice import Invoice
from clearing_kernel.models.payment import Payment
from clearing_kernel.models.settlement import (
    SettlementApproval,
    SettlementBatch,
    SettlementBatchInvoice,
    SettlementLeg,
    SettlementPeriodLock,
)
from clearing_kernel.services.auditor_service import AuditorService
from clearing_kernel.services.sequence_service import SequenceService
from clearing_kernel.utils.hashing import hash_settlement_legs

logger = get_logger("services.ledger_store")


@dataclass(frozen=True)
class LegSpec:
    """A leg to persist with a new batch."""

    payer_id: UUID
    payee_id: UUID
    amount: Decimal


@dataclass(frozen=True)
class BatchSpec:
    """Everything needed to persist a freshly computed batch."""

    period: str
    fx_rate: Decimal
    currency: str
    total_net_amount: Decimal
    total_gross_amount: Decimal
    legs: tuple[LegSpec, ...]
    invoice_amounts: tuple[tuple[UUID, Decimal], ...]
    computed_at: datetime
    risk_score: int = 0
    risk_recommendation: str = ""
    risk_factors: tuple[dict[str, Any], ...] = ()
    summary: dict[str, Any] | None = None


class LedgerStore:
    """
    Audited writes against the ledger.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT decide *what* status an invoice should have; engines and
          services decide, the store validates and persists.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        clock: Clock | None = None,
    ):
        self._session = session
        self._auditor = auditor
        self._clock = clock or SystemClock()
        self._sequences = SequenceService(session)

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def _flush_versioned(self, entity_type: str, entity_id: UUID) -> None:
        try:
            self._session.flush()
        except StaleDataError as exc:
            logger.warning(
                "optimistic_lock_conflict",
                extra={"entity_type": entity_type, "entity_id": str(entity_id)},
            )
            raise OptimisticLockError(entity_type, str(entity_id)) from exc

    def update_invoice_status(
        self,
        invoice_id: UUID,
        status: InvoiceStatus,
        actor_id: UUID,
        *,
        confidence_score: Decimal | None = None,
        matched_delivery_ids: Sequence[UUID] | None = None,
        expected_version: int | None = None,
    ) -> bool:
        """
        Move an invoice to ``status`` and/or update its match annotations.

        Returns:
            True if anything changed (and one audit event was written),
            False for a no-op.

        Raises:
            InvoiceNotFoundError, InvalidTransitionError, OptimisticLockError,
            ValidationError (MATCHED without score or delivery ids).
        """
        invoice = self._session.get(Invoice, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))
        if expected_version is not None and invoice.version != expected_version:
            raise OptimisticLockError("Invoice", str(invoice_id))

        current = InvoiceStatus(invoice.status)
        new_ids = [str(d) for d in matched_delivery_ids] if matched_delivery_ids is not None else None

        if status == InvoiceStatus.MATCHED:
            score = confidence_score if confidence_score is not None else invoice.confidence_score
            ids = new_ids if new_ids is not None else invoice.matched_delivery_ids
            if score is None or not ids:
                raise ValidationError(
                    f"Invoice {invoice_id}: MATCHED requires a confidence score and delivery ids"
                )

        old_values: dict[str, Any] = {}
        new_values: dict[str, Any] = {}
        if confidence_score is not None and invoice.confidence_score != confidence_score:
            old_values["confidence_score"] = invoice.confidence_score
            new_values["confidence_score"] = confidence_score
        if new_ids is not None and list(invoice.matched_delivery_ids or []) != new_ids:
            old_values["matched_delivery_ids"] = list(invoice.matched_delivery_ids or [])
            new_values["matched_delivery_ids"] = new_ids

        if current == status and not new_values:
            return False
        if current != status:
            require_transition(INVOICE_TRANSITIONS, "Invoice", invoice_id, current, status)

        invoice.status = status.value
        if "confidence_score" in new_values:
            invoice.confidence_score = confidence_score
        if "matched_delivery_ids" in new_values:
            invoice.matched_delivery_ids = new_ids
        invoice.updated_by_id = actor_id
        self._flush_versioned("Invoice", invoice_id)

        self._auditor.record_invoice_status_changed(
            invoice_id=invoice_id,
            old_status=current.value,
            new_status=status.value,
            actor_id=actor_id,
            old_values=old_values,
            new_values=new_values,
        )
        logger.info(
            "invoice_status_updated",
            extra={
                "invoice_id": str(invoice_id),
                "from_status": current.value,
                "to_status": status.value,
            },
        )
        return True

    def mark_invoice_settled(
        self, invoice_id: UUID, batch_id: UUID, actor_id: UUID
    ) -> InvoiceRecord:
        """Mark an invoice PAID by a settlement batch."""
        self.update_invoice_status(invoice_id, InvoiceStatus.PAID, actor_id)
        invoice = self._session.get(Invoice, invoice_id)
        invoice.settled_batch_id = batch_id
        self._flush_versioned("Invoice", invoice_id)
        return invoice.to_dto()

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def create_dispute(self, request: NewDispute, actor_id: UUID) -> UUID:
        dispute_ref = self._sequences.next_reference(SequenceService.DISPUTE, "DSP")
        dispute = Dispute(
            dispute_ref=dispute_ref,
            invoice_id=request.invoice_id,
            contract_id=request.contract_id,
            raised_by_id=request.raised_by_id,
            received_by_id=request.received_by_id,
            reason_code=request.reason_code.value,
            status=DisputeStatus.OPEN.value,
            description=request.description,
            sla_deadline=request.sla_deadline,
            amount_in_dispute=request.amount_in_dispute,
            created_by_id=actor_id,
        )
        self._session.add(dispute)
        self._session.flush()

        self._auditor.record_dispute_raised(
            dispute_id=dispute.id,
            dispute_ref=dispute_ref,
            invoice_id=request.invoice_id,
            reason_code=request.reason_code.value,
            actor_id=actor_id,
        )
        logger.info(
            "dispute_created",
            extra={
                "dispute_ref": dispute_ref,
                "invoice_id": str(request.invoice_id),
                "reason_code": request.reason_code.value,
            },
        )
        return dispute.id

    def update_dispute_status(
        self,
        dispute_id: UUID,
        status: DisputeStatus,
        actor_id: UUID,
        *,
        ruling_amount: Decimal | None = None,
        resolved_at: datetime | None = None,
    ) -> None:
        dispute = self._session.get(Dispute, dispute_id)
        if dispute is None:
            raise DisputeNotFoundError(str(dispute_id))
        current = DisputeStatus(dispute.status)
        require_transition(DISPUTE_TRANSITIONS, "Dispute", dispute_id, current, status)

        dispute.status = status.value
        new_values: dict[str, Any] = {}
        if ruling_amount is not None:
            dispute.ruling_amount = ruling_amount
            new_values["ruling_amount"] = ruling_amount
        if resolved_at is not None:
            dispute.resolved_at = resolved_at
            new_values["resolved_at"] = resolved_at
        dispute.updated_by_id = actor_id
        self._session.flush()

        self._auditor.record_dispute_status_changed(
            dispute_id, current.value, status.value, actor_id, new_values=new_values
        )

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def create_payment(self, request: NewPayment, actor_id: UUID) -> UUID:
        payment_ref = self._sequences.next_reference(SequenceService.PAYMENT, "PAY")
        payment = Payment(
            payment_ref=payment_ref,
            invoice_id=request.invoice_id,
            payer_id=request.payer_id,
            payee_id=request.payee_id,
            amount=request.amount,
            currency=request.currency,
            value_date=request.value_date,
            bank_reference=request.bank_reference,
            status=request.status.value,
            settlement_batch_id=request.settlement_batch_id,
            settlement_leg_id=request.settlement_leg_id,
            created_by_id=actor_id,
        )
        self._session.add(payment)
        self._session.flush()

        self._auditor.record_payment_recorded(
            payment.id, payment_ref, request.amount, request.status.value, actor_id
        )
        return payment.id

    def update_payment_status(
        self,
        payment_id: UUID,
        status: PaymentStatus,
        actor_id: UUID,
        reason: str = "",
    ) -> None:
        payment = self._session.get(Payment, payment_id)
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))
        current = PaymentStatus(payment.status)
        require_transition(PAYMENT_TRANSITIONS, "Payment", payment_id, current, status)

        payment.status = status.value
        payment.updated_by_id = actor_id
        self._session.flush()
        self._auditor.record_payment_status_changed(
            payment_id, current.value, status.value, actor_id, reason=reason
        )

    def reverse_payment(self, payment_id: UUID, actor_id: UUID, reason: str) -> None:
        """COMPLETED -> REVERSED."""
        self.update_payment_status(payment_id, PaymentStatus.REVERSED, actor_id, reason=reason)

    # ------------------------------------------------------------------
    # Settlement batches
    # ------------------------------------------------------------------

    def acquire_period_lock(self, period: str) -> SettlementPeriodLock:
        """
        Insert the period's lock row.

        Raises:
            PeriodLockedError: If another live batch holds the period.
        """
        existing = self._session.execute(
            select(SettlementPeriodLock).where(SettlementPeriodLock.period == period)
        ).scalar_one_or_none()
        if existing is not None:
            holder = self._session.get(SettlementBatch, existing.batch_id) if existing.batch_id else None
            raise PeriodLockedError(period, holder.batch_ref if holder else None)

        savepoint = self._session.begin_nested()
        try:
            lock = SettlementPeriodLock(period=period, acquired_at=self._clock.now())
            self._session.add(lock)
            self._session.flush()
            savepoint.commit()
        except SAIntegrityError as exc:
            savepoint.rollback()
            raise PeriodLockedError(period) from exc

        logger.info("settlement_period_locked", extra={"period": period})
        return lock

    def release_period_lock(self, period: str) -> None:
        lock = self._session.execute(
            select(SettlementPeriodLock).where(SettlementPeriodLock.period == period)
        ).scalar_one_or_none()
        if lock is not None:
            self._session.delete(lock)
            self._session.flush()
            logger.info("settlement_period_unlocked", extra={"period": period})

    def create_settlement_batch(self, spec: BatchSpec, actor_id: UUID) -> SettlementBatchRecord:
        """
        Persist a COMPUTED batch, its legs and its invoice snapshot.

        Preconditions:
            The caller holds the period lock (``acquire_period_lock``).
        """
        seq = self._sequences.next_value(
            f"{SequenceService.SETTLEMENT_BATCH}:{spec.period.replace('-', '')}"
        )
        batch_ref = f"SB-{spec.period.replace('-', '')}-{seq:04d}"

        batch = SettlementBatch(
            batch_ref=batch_ref,
            period=spec.period,
            fx_rate=spec.fx_rate,
            currency=spec.currency,
            status=SettlementStatus.COMPUTED.value,
            total_net_amount=spec.total_net_amount,
            total_gross_amount=spec.total_gross_amount,
            legs_hash="",
            risk_score=spec.risk_score,
            risk_recommendation=spec.risk_recommendation,
            risk_factors=list(spec.risk_factors),
            computed_at=spec.computed_at,
            created_by_id=actor_id,
        )
        self._session.add(batch)
        self._session.flush()

        legs = [
            SettlementLeg(
                batch_id=batch.id,
                leg_seq=index,
                payer_id=leg.payer_id,
                payee_id=leg.payee_id,
                amount=leg.amount,
                status=LegStatus.PENDING.value,
            )
            for index, leg in enumerate(spec.legs, start=1)
        ]
        self._session.add_all(legs)
        self._session.add_all(
            SettlementBatchInvoice(
                batch_id=batch.id,
                invoice_id=invoice_id,
                outstanding_amount=amount,
            )
            for invoice_id, amount in spec.invoice_amounts
        )
        batch.legs_hash = hash_settlement_legs([leg.snapshot() for leg in legs])

        lock = self._session.execute(
            select(SettlementPeriodLock).where(SettlementPeriodLock.period == spec.period)
        ).scalar_one_or_none()
        if lock is not None:
            lock.batch_id = batch.id
        self._session.flush()

        self._auditor.record_settlement_computed(
            batch_id=batch.id,
            batch_ref=batch_ref,
            period=spec.period,
            legs_hash=batch.legs_hash,
            summary=spec.summary or {},
            actor_id=actor_id,
        )
        logger.info(
            "settlement_batch_created",
            extra={
                "batch_ref": batch_ref,
                "period": spec.period,
                "leg_count": len(legs),
                "total_net_amount": str(spec.total_net_amount),
            },
        )
        return batch.to_dto()

    def lock_batch(self, batch_id: UUID) -> SettlementBatchRecord:
        """Re-read a batch under a row lock (serializes approvals and execution)."""
        batch = self._session.execute(
            select(SettlementBatch)
            .where(SettlementBatch.id == batch_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if batch is None:
            raise SettlementBatchNotFoundError(str(batch_id))
        return batch.to_dto()

    def current_legs_hash(self, batch_id: UUID) -> str:
        legs = self._session.execute(
            select(SettlementLeg)
            .where(SettlementLeg.batch_id == batch_id)
            .execution_options(populate_existing=True)
        ).scalars()
        return hash_settlement_legs([leg.snapshot() for leg in legs])

    def update_settlement_batch_status(
        self,
        batch_id: UUID,
        status: SettlementStatus,
        actor_id: UUID,
        *,
        approved_at: datetime | None = None,
        executed_at: datetime | None = None,
        reservation_reference: str | None = None,
        failure_reason: str | None = None,
    ) -> SettlementBatchRecord:
        batch = self._session.get(SettlementBatch, batch_id)
        if batch is None:
            raise SettlementBatchNotFoundError(str(batch_id))
        current = SettlementStatus(batch.status)
        require_transition(SETTLEMENT_TRANSITIONS, "SettlementBatch", batch_id, current, status)

        batch.status = status.value
        new_values: dict[str, Any] = {}
        if approved_at is not None:
            batch.approved_at = approved_at
            new_values["approved_at"] = approved_at
        if executed_at is not None:
            batch.executed_at = executed_at
            new_values["executed_at"] = executed_at
        if reservation_reference is not None:
            batch.reservation_reference = reservation_reference
            new_values["reservation_reference"] = reservation_reference
        if failure_reason is not None:
            batch.failure_reason = failure_reason
            new_values["failure_reason"] = failure_reason
        batch.updated_by_id = actor_id
        self._session.flush()

        self._auditor.record_settlement_status_changed(
            batch_id, current.value, status.value, actor_id,
            new_values=new_values, reason=failure_reason or "",
        )
        logger.info(
            "settlement_batch_status_updated",
            extra={
                "batch_ref": batch.batch_ref,
                "from_status": current.value,
                "to_status": status.value,
            },
        )
        return batch.to_dto()

    def record_approval(
        self,
        batch_id: UUID,
        approver_id: UUID,
        role: str,
        signature: str,
        actor_id: UUID,
    ) -> int:
        """Persist one approval; returns the number of approvals now on the batch."""
        self._session.add(
            SettlementApproval(
                batch_id=batch_id,
                approver_id=approver_id,
                role=role,
                signature=signature,
                approved_at=self._clock.now(),
            )
        )
        self._session.flush()
        count = len(
            self._session.execute(
                select(SettlementApproval.id).where(SettlementApproval.batch_id == batch_id)
            ).all()
        )
        self._auditor.record_settlement_approval(batch_id, approver_id, role, count, actor_id)
        return count

    def update_leg_status(
        self,
        leg_id: UUID,
        status: LegStatus,
        actor_id: UUID,
        *,
        payment_id: UUID | None = None,
        failure_reason: str | None = None,
    ) -> None:
        leg = self._session.get(SettlementLeg, leg_id)
        current = LegStatus(leg.status)
        require_transition(LEG_TRANSITIONS, "SettlementLeg", leg_id, current, status)

        leg.status = status.value
        if payment_id is not None:
            leg.payment_id = payment_id
        if failure_reason is not None:
            leg.failure_reason = failure_reason
        self._session.flush()
        self._auditor.record_leg_status_changed(
            leg_id, leg.batch_id, current.value, status.value, actor_id,
            reason=failure_reason or "",
        )

    def invoice_amounts_for_batch(self, batch_id: UUID) -> dict[UUID, Decimal]:
        rows = self._session.execute(
            select(SettlementBatchInvoice).where(SettlementBatchInvoice.batch_id == batch_id)
        ).scalars()
        return {row.invoice_id: row.outstanding_amount for row in rows}

