"""
clearing_services.settlement_orchestrator -- settlement batch lifecycle.

Responsibility:
    Drives a settlement batch from computation through multi-party approval
    to execution against escrow:

        compute -> COMPUTED -> approve x quorum -> APPROVED
                            -> reject          -> REJECTED
        APPROVED -> execute -> EXECUTING -> EXECUTED | FAILED

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    Composes the pure netting / aging / risk / approval engines with
    ``LedgerStore``, ``EscrowService`` and a pluggable ``TransferGateway``.

Invariants enforced:
    - At most one live (COMPUTED / APPROVED / EXECUTING) batch per period,
      guarded by the period lock row.
    - Quorum flips COMPUTED -> APPROVED exactly once; approvals are
      serialized by a row lock on the batch.
    - Execution refuses a batch whose legs no longer hash to ``legs_hash``.
    - A batch is EXECUTED only when every leg COMMITTED; otherwise every
      committed payment is REVERSED and the batch ends FAILED.
    - The escrow reservation is released exactly once per execution.

Failure modes:
    - InvalidPeriodError, InvalidFxRateError on bad input.
    - PeriodLockedError when the period already has a live batch.
    - ApprovalNotAllowedError, UnauthorizedApproverError,
      DuplicateApprovalError from ``approve``.
    - SettlementNotExecutableError, SettlementSnapshotTamperedError from
      ``execute``.
    - Insufficient escrow is NOT an exception: ``execute`` returns
      outcome ``RESERVATION_FAILED`` and the batch stays APPROVED.

Audit relevance:
    Every batch status change, leg status change, approval, payment and
    escrow movement writes exactly one audit event.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy.exc import IntegrityError as SAIntegrityError
from sqlalchemy.orm import Session

from clearing_config import ClearingConfig, get_active_config
from clearing_engines.aging import AgeBucket, AgingCalculator, dispute_rate
from clearing_engines.approval import (
    QuorumEvaluation,
    QuorumPolicy,
    evaluate_quorum,
    find_duplicate_approval,
    validate_approver_role,
)
from clearing_engines.netting import NettingResult, compute_netting
from clearing_engines.risk import RiskAssessment, RiskPolicy, assess_settlement_risk
from clearing_kernel.domain.clock import Clock, SystemClock
from clearing_kernel.domain.dtos import (
    InvoiceRecord,
    ItemError,
    NewPayment,
    SettlementBatchRecord,
    SettlementLegRecord,
)
from clearing_kernel.domain.values import (
    InvoiceStatus,
    LegStatus,
    PaymentStatus,
    ReservationStatus,
    SettlementStatus,
)
from clearing_kernel.exceptions import (
    ApprovalNotAllowedError,
    DuplicateApprovalError,
    InvalidFxRateError,
    InvalidPeriodError,
    PartyNotFoundError,
    SettlementNotExecutableError,
    SettlementSnapshotTamperedError,
    UnauthorizedApproverError,
)
from clearing_kernel.logging_config import LogContext, get_logger
from clearing_kernel.selectors.ledger_selector import LedgerSelector
from clearing_kernel.services.auditor_service import AuditorService
from clearing_kernel.services.escrow_service import EscrowService
from clearing_kernel.services.ledger_store import BatchSpec, LedgerStore, LegSpec
from clearing_services.transfer_gateway import LedgerTransferGateway, TransferGateway

logger = get_logger("services.settlement")

PERIOD_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")

SETTLEABLE_STATUSES = (
    InvoiceStatus.MATCHED,
    InvoiceStatus.PARTIALLY_PAID,
    InvoiceStatus.PAID,
)

EXECUTED = "EXECUTED"
FAILED = "FAILED"
RESERVATION_FAILED = "RESERVATION_FAILED"


def period_bounds(period: str) -> tuple[date, date]:
    """First and last calendar day of a ``YYYY-MM`` period."""
    if not isinstance(period, str) or not PERIOD_PATTERN.match(period):
        raise InvalidPeriodError(str(period))
    year, month = (int(part) for part in period.split("-"))
    return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ComputeResult:
    """
    Outcome of ``compute``.

    ``batch`` is None when netting produced no legs; the period lock is
    released in that case and nothing was persisted.
    """

    period: str
    batch: SettlementBatchRecord | None
    netting: NettingResult
    risk: RiskAssessment
    errors: tuple[ItemError, ...] = ()


@dataclass(frozen=True)
class ApprovalResult:
    batch_id: UUID
    status: SettlementStatus
    approval_count: int
    quorum: QuorumEvaluation
    newly_approved: bool


@dataclass(frozen=True)
class ExecutionResult:
    batch_id: UUID
    batch_ref: str
    outcome: str
    status: SettlementStatus
    committed_legs: tuple[UUID, ...] = ()
    failed_legs: tuple[ItemError, ...] = ()
    payments: tuple[UUID, ...] = ()
    reservation_reference: str | None = None
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.outcome == EXECUTED


@dataclass
class _ExecutionProgress:
    committed: list[tuple[SettlementLegRecord, UUID]] = field(default_factory=list)
    failed: list[ItemError] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class SettlementOrchestrator:
    """
    Computes, approves, rejects and executes settlement batches.

    Contract:
        Every public method returns a structured result or raises a typed
        ``ClearingKernelError``; partial progress inside ``execute`` is
        rolled back by compensation, never abandoned.

    Non-goals:
        - Does NOT call ``session.commit()``; the caller owns the
          transaction.
        - Does NOT retry a FAILED batch; a failed period is recomputed.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: ClearingConfig | None = None,
        gateway: TransferGateway | None = None,
        auditor: AuditorService | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._config = config or get_active_config()
        self._gateway = gateway or LedgerTransferGateway()
        self._auditor = auditor or AuditorService(session, self._clock)
        self._selector = LedgerSelector(session)
        self._store = LedgerStore(session, self._auditor, self._clock)
        self._escrow = EscrowService(session, self._auditor, self._clock)

        settlement = self._config.settlement
        self._policy = QuorumPolicy(
            required_roles=settlement.approver_roles,
            min_approvers=settlement.min_approvals,
            require_distinct_roles=settlement.require_distinct_roles,
        )
        risk = self._config.risk
        self._risk_policy = RiskPolicy(
            high_value_threshold=risk.high_value_threshold,
            concentration_ratio=risk.concentration_ratio,
            max_batch_age=timedelta(hours=risk.max_batch_age_hours),
            dispute_rate_percent=risk.dispute_rate_percent,
            overdue_ratio=risk.overdue_ratio,
            watchlist_tokens=risk.watchlist_tokens,
            review_above=risk.review_above,
            reject_above=risk.reject_above,
        )
        self._aging = AgingCalculator(
            tuple(AgeBucket(b.name, b.min_days, b.max_days) for b in self._config.aging.buckets)
        )

    # ------------------------------------------------------------------
    # Compute
    # ------------------------------------------------------------------

    def compute(self, period: str, fx_rate: Decimal, actor_id: UUID) -> ComputeResult:
        """
        Net the period's settleable invoices into a COMPUTED batch.

        Raises:
            InvalidPeriodError, InvalidFxRateError, PeriodLockedError.
        """
        period_start, period_end = period_bounds(period)
        if not isinstance(fx_rate, Decimal) or not fx_rate.is_finite() or fx_rate <= 0:
            raise InvalidFxRateError(fx_rate)

        with LogContext.bind(actor_id=str(actor_id)):
            self._store.acquire_period_lock(period)
            logger.info("settlement_compute_started", extra={"period": period, "fx_rate": str(fx_rate)})

            candidates = self._selector.find_invoices_in_period(
                period_start, period_end, SETTLEABLE_STATUSES, unsettled_only=True
            )
            parties = self._selector.get_parties(
                pid for inv in candidates for pid in (inv.issuer_id, inv.counterparty_id)
            )

            errors: list[ItemError] = []
            invoices: list[InvoiceRecord] = []
            for invoice in candidates:
                missing = next(
                    (pid for pid in (invoice.issuer_id, invoice.counterparty_id) if pid not in parties),
                    None,
                )
                if missing is not None:
                    errors.append(
                        ItemError.from_exception(invoice.invoice_id, PartyNotFoundError(str(missing)))
                    )
                    continue
                invoices.append(invoice)

            invoice_ids = [inv.invoice_id for inv in invoices]
            payments = self._selector.find_completed_payments(invoice_ids)
            netting = compute_netting(
                invoices,
                payments,
                fx_rate=fx_rate,
                settlement_currency=self._config.netting.settlement_currency,
                party_names={pid: info.name for pid, info in parties.items()},
                epsilon=self._config.netting.epsilon,
            )

            now = self._clock.now()
            disputed = self._selector.find_disputed_invoice_ids(invoice_ids)
            aging = self._aging.age_invoices(
                invoices=invoices, payments=payments, as_of=now.date(), disputed_ids=disputed
            )
            risk = assess_settlement_risk(
                total_net_amount=netting.summary.total_net_amount,
                positions=netting.positions,
                computed_at=now,
                as_of=now,
                dispute_rate_percent=dispute_rate(invoices, disputed),
                overdue_amount=aging.overdue_amount(),
                total_outstanding=aging.total_outstanding,
                policy=self._risk_policy,
            )

            if not netting.legs:
                self._store.release_period_lock(period)
                logger.info(
                    "settlement_nothing_to_settle",
                    extra={"period": period, "invoice_count": len(invoices)},
                )
                return ComputeResult(period, None, netting, risk, tuple(errors))

            batch = self._store.create_settlement_batch(
                BatchSpec(
                    period=period,
                    fx_rate=fx_rate,
                    currency=netting.currency,
                    total_net_amount=netting.summary.total_net_amount,
                    total_gross_amount=netting.summary.total_gross_amount,
                    legs=tuple(LegSpec(leg.payer_id, leg.payee_id, leg.amount) for leg in netting.legs),
                    invoice_amounts=netting.invoice_amounts,
                    computed_at=now,
                    risk_score=risk.score,
                    risk_recommendation=risk.recommendation,
                    risk_factors=tuple(f.as_dict() for f in risk.factors),
                    summary={
                        **netting.summary.as_dict(),
                        "fx_rate": str(fx_rate),
                        "currency": netting.currency,
                        "invoice_count": len(invoices),
                        "skipped_invoices": len(errors),
                        "risk_score": risk.score,
                        "config_checksum": self._config.checksum,
                    },
                ),
                actor_id,
            )
            if risk.score > self._risk_policy.review_above:
                logger.warning(
                    "settlement_risk_elevated",
                    extra={
                        "batch_ref": batch.batch_ref,
                        "risk_score": risk.score,
                        "recommendation": risk.recommendation,
                    },
                )
            return ComputeResult(period, batch, netting, risk, tuple(errors))

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    def approve(
        self,
        batch_id: UUID,
        approver_id: UUID,
        role: str,
        actor_id: UUID | None = None,
        signature: str = "",
    ) -> ApprovalResult:
        """
        Record one institutional approval; the quorum-completing approval
        moves the batch to APPROVED.

        Raises:
            SettlementBatchNotFoundError, ApprovalNotAllowedError,
            UnauthorizedApproverError, DuplicateApprovalError.
        """
        actor_id = actor_id or approver_id
        batch = self._store.lock_batch(batch_id)
        if batch.status != SettlementStatus.COMPUTED:
            raise ApprovalNotAllowedError(str(batch_id), batch.status.value)
        if not validate_approver_role(role, self._policy):
            raise UnauthorizedApproverError(str(approver_id), role)

        approvals = self._selector.get_batch_approvals(batch_id)
        duplicate = find_duplicate_approval(approvals, approver_id, role)
        if duplicate is not None:
            raise DuplicateApprovalError(str(batch_id), str(approver_id), role, duplicate)

        savepoint = self._session.begin_nested()
        try:
            count = self._store.record_approval(batch_id, approver_id, role, signature, actor_id)
            savepoint.commit()
        except SAIntegrityError as exc:
            savepoint.rollback()
            raise DuplicateApprovalError(
                str(batch_id), str(approver_id), role, "concurrent approval"
            ) from exc

        quorum = evaluate_quorum(self._policy, self._selector.get_batch_approvals(batch_id))
        status = batch.status
        if quorum.is_approved:
            status = self._store.update_settlement_batch_status(
                batch_id,
                SettlementStatus.APPROVED,
                actor_id,
                approved_at=self._clock.now(),
            ).status

        logger.info(
            "settlement_approval_recorded",
            extra={
                "batch_ref": batch.batch_ref,
                "role": role,
                "approval_count": count,
                "quorum_met": quorum.is_approved,
            },
        )
        return ApprovalResult(
            batch_id=batch_id,
            status=status,
            approval_count=count,
            quorum=quorum,
            newly_approved=quorum.is_approved,
        )

    def reject(self, batch_id: UUID, actor_id: UUID, reason: str) -> SettlementBatchRecord:
        """COMPUTED -> REJECTED; frees the period for a recompute."""
        batch = self._store.lock_batch(batch_id)
        updated = self._store.update_settlement_batch_status(
            batch_id, SettlementStatus.REJECTED, actor_id, failure_reason=reason
        )
        self._store.release_period_lock(batch.period)
        return updated

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def reservation_reference(self, batch: SettlementBatchRecord) -> str:
        return f"{self._config.settlement.reservation_prefix}-{batch.batch_ref}"

    def execute(self, batch_id: UUID, actor_id: UUID) -> ExecutionResult:
        """
        Reserve escrow and execute every leg of an APPROVED batch.

        Raises:
            SettlementBatchNotFoundError, SettlementNotExecutableError,
            SettlementSnapshotTamperedError.
        """
        batch = self._store.lock_batch(batch_id)
        if batch.status != SettlementStatus.APPROVED:
            raise SettlementNotExecutableError(str(batch_id), batch.status.value)

        actual_hash = self._store.current_legs_hash(batch_id)
        if actual_hash != batch.legs_hash:
            logger.critical(
                "settlement_snapshot_tampered",
                extra={"batch_ref": batch.batch_ref, "expected": batch.legs_hash, "actual": actual_hash},
            )
            raise SettlementSnapshotTamperedError(str(batch_id), batch.legs_hash, actual_hash)

        with LogContext.bind(batch_ref=batch.batch_ref, actor_id=str(actor_id)):
            reference = self.reservation_reference(batch)
            reservation = self._escrow.reserve(
                batch.total_net_amount,
                batch.currency,
                reference,
                timedelta(hours=self._config.settlement.reservation_ttl_hours),
                actor_id,
            )
            if not reservation.success:
                logger.warning(
                    "settlement_reservation_failed",
                    extra={"error_code": reservation.error_code, "amount": str(batch.total_net_amount)},
                )
                return ExecutionResult(
                    batch_id=batch_id,
                    batch_ref=batch.batch_ref,
                    outcome=RESERVATION_FAILED,
                    status=batch.status,
                    reservation_reference=reference,
                    message=reservation.message,
                )

            self._store.update_settlement_batch_status(
                batch_id, SettlementStatus.EXECUTING, actor_id, reservation_reference=reference
            )

            progress = _ExecutionProgress()
            legs = self._selector.get_batch_legs(batch_id)
            for index, leg in enumerate(legs):
                if self._escrow.is_expired(reference):
                    progress.failed.extend(
                        ItemError(str(pending.leg_id), "RESERVATION_EXPIRED", "escrow reservation expired")
                        for pending in legs[index:]
                    )
                    break
                if not self._execute_leg(batch, leg, actor_id, progress):
                    break

            if progress.failed:
                return self._roll_back(batch, reference, progress, actor_id)
            return self._finish(batch, reference, progress, actor_id)

    def _execute_leg(
        self,
        batch: SettlementBatchRecord,
        leg: SettlementLegRecord,
        actor_id: UUID,
        progress: _ExecutionProgress,
    ) -> bool:
        savepoint = self._session.begin_nested()
        try:
            receipt = self._gateway.transfer(batch, leg)
            if not receipt.success:
                savepoint.rollback()
                progress.failed.append(
                    ItemError(str(leg.leg_id), "TRANSFER_FAILED", receipt.error or "transfer rejected")
                )
                return False
            payment_id = self._store.create_payment(
                NewPayment(
                    payer_id=leg.payer_id,
                    payee_id=leg.payee_id,
                    amount=leg.amount,
                    currency=batch.currency,
                    value_date=self._clock.now().date(),
                    bank_reference=receipt.bank_reference,
                    status=PaymentStatus.COMPLETED,
                    settlement_batch_id=batch.batch_id,
                    settlement_leg_id=leg.leg_id,
                ),
                actor_id,
            )
            self._store.update_leg_status(leg.leg_id, LegStatus.COMMITTED, actor_id, payment_id=payment_id)
            savepoint.commit()
        except Exception as exc:
            savepoint.rollback()
            logger.error(
                "settlement_leg_failed",
                extra={"leg_seq": leg.leg_seq, "error": str(exc)},
            )
            progress.failed.append(ItemError.from_exception(str(leg.leg_id), exc))
            return False

        progress.committed.append((leg, payment_id))
        logger.info(
            "settlement_leg_committed",
            extra={"leg_seq": leg.leg_seq, "amount": str(leg.amount), "payment_id": str(payment_id)},
        )
        return True

    def _finish(
        self,
        batch: SettlementBatchRecord,
        reference: str,
        progress: _ExecutionProgress,
        actor_id: UUID,
    ) -> ExecutionResult:
        updated = self._store.update_settlement_batch_status(
            batch.batch_id, SettlementStatus.EXECUTED, actor_id, executed_at=self._clock.now()
        )
        self._escrow.release(reference, actor_id, settled=True)
        for invoice_id in self._selector.get_batch_invoice_ids(batch.batch_id):
            self._store.mark_invoice_settled(invoice_id, batch.batch_id, actor_id)
        self._store.release_period_lock(batch.period)

        logger.info(
            "settlement_batch_executed",
            extra={"leg_count": len(progress.committed), "total_net_amount": str(batch.total_net_amount)},
        )
        return ExecutionResult(
            batch_id=batch.batch_id,
            batch_ref=batch.batch_ref,
            outcome=EXECUTED,
            status=updated.status,
            committed_legs=tuple(leg.leg_id for leg, _ in progress.committed),
            payments=tuple(payment_id for _, payment_id in progress.committed),
            reservation_reference=reference,
        )

    def _roll_back(
        self,
        batch: SettlementBatchRecord,
        reference: str,
        progress: _ExecutionProgress,
        actor_id: UUID,
    ) -> ExecutionResult:
        reason = progress.failed[0].message
        for leg, payment_id in progress.committed:
            self._store.reverse_payment(payment_id, actor_id, reason=f"settlement rollback: {reason}")

        failures = {error.item_id: error for error in progress.failed}
        for leg in self._selector.get_batch_legs(batch.batch_id):
            if str(leg.leg_id) in failures and leg.status == LegStatus.PENDING:
                self._store.update_leg_status(
                    leg.leg_id, LegStatus.FAILED, actor_id, failure_reason=failures[str(leg.leg_id)].message
                )
            elif leg.status in (LegStatus.PENDING, LegStatus.COMMITTED):
                self._store.update_leg_status(leg.leg_id, LegStatus.ROLLED_BACK, actor_id)

        reservation = self._selector.get_reservation(reference)
        if reservation is not None and reservation.status == ReservationStatus.ACTIVE:
            self._escrow.release(reference, actor_id)

        updated = self._store.update_settlement_batch_status(
            batch.batch_id, SettlementStatus.FAILED, actor_id, failure_reason=reason
        )
        self._store.release_period_lock(batch.period)

        logger.error(
            "settlement_batch_failed",
            extra={
                "reason": reason,
                "reversed_payments": len(progress.committed),
                "failed_legs": len(progress.failed),
            },
        )
        return ExecutionResult(
            batch_id=batch.batch_id,
            batch_ref=batch.batch_ref,
            outcome=FAILED,
            status=updated.status,
            failed_legs=tuple(progress.failed),
            payments=tuple(payment_id for _, payment_id in progress.committed),
            reservation_reference=reference,
            message=reason,
        )

    def fail_expired_executions(self, actor_id: UUID) -> list[ExecutionResult]:
        """Roll back every EXECUTING batch whose escrow reservation has expired."""
        results: list[ExecutionResult] = []
        for stale in self._selector.find_batches(SettlementStatus.EXECUTING):
            batch = self._store.lock_batch(stale.batch_id)
            reference = batch.reservation_reference or self.reservation_reference(batch)
            if self._selector.get_reservation(reference) is not None and not self._escrow.is_expired(reference):
                continue

            progress = _ExecutionProgress()
            for leg in self._selector.get_batch_legs(batch.batch_id):
                if leg.status == LegStatus.COMMITTED and leg.payment_id is not None:
                    progress.committed.append((leg, leg.payment_id))
                elif leg.status == LegStatus.PENDING:
                    progress.failed.append(
                        ItemError(str(leg.leg_id), "RESERVATION_EXPIRED", "escrow reservation expired")
                    )
            if not progress.failed:
                progress.failed.append(
                    ItemError(str(batch.batch_id), "RESERVATION_EXPIRED", "escrow reservation expired")
                )
            with LogContext.bind(batch_ref=batch.batch_ref, actor_id=str(actor_id)):
                results.append(self._roll_back(batch, reference, progress, actor_id))
        return results
