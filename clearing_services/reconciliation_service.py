"""
clearing_services.reconciliation_service -- periodic invoice/delivery
reconciliation run.

Responsibility:
    Loads the open invoices of a period and the deliveries around it, runs
    the matching engine, and applies each outcome: MATCHED with its
    confidence score and delivery ids, or PARTIALLY_MATCHED with an OPEN
    quantity-variance dispute for HIGH severity exceptions.

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    Composes ``clearing_engines.matching.reconcile`` (pure) with
    ``LedgerSelector`` / ``LedgerStore`` (kernel I/O).

Invariants enforced:
    - Per-invoice atomicity: the status write and the dispute for one
      invoice share a SAVEPOINT and commit or roll back together.
    - Idempotence: a second run over unchanged data writes nothing and
      opens no second dispute for the same invoice.
    - Optimistic concurrency: each write carries the invoice version the
      engine saw.

Failure modes:
    - InvalidDateRangeError when ``period_start > period_end``.
    - Per-invoice failures (missing contract, version conflict, illegal
      transition) are collected as ``ItemError`` and never abort the run.

Audit relevance:
    One audit event per invoice status change and per dispute created,
    plus one RECONCILIATION_RUN event carrying the run summary.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from clearing_config import ClearingConfig, get_active_config
from clearing_engines.matching import (
    ExceptionResult,
    MatchResult,
    ReconciliationResult,
    RuleSet,
    eligibility_window,
    reconcile,
)
from clearing_kernel.domain.clock import Clock, SystemClock
from clearing_kernel.domain.dtos import InvoiceRecord, ItemError, NewDispute
from clearing_kernel.domain.values import (
    DisputeReason,
    ExceptionSeverity,
    InvoiceStatus,
)
from clearing_kernel.exceptions import (
    ClearingKernelError,
    ContractNotFoundError,
    InvalidDateRangeError,
)
from clearing_kernel.logging_config import LogContext, get_logger
from clearing_kernel.selectors.ledger_selector import LedgerSelector
from clearing_kernel.services.auditor_service import AuditorService
from clearing_kernel.services.ledger_store import LedgerStore

logger = get_logger("services.reconciliation")

RECONCILABLE_STATUSES = (InvoiceStatus.PENDING, InvoiceStatus.PARTIALLY_MATCHED)


@dataclass(frozen=True)
class ReconciliationRunResult:
    """
    Outcome of one reconciliation run.

    ``matched_ids`` and ``exception_ids`` list invoices whose outcome was
    applied; invoices listed in ``errors`` were left untouched.
    """

    run_id: UUID
    period_start: date
    period_end: date
    engine_result: ReconciliationResult
    matched_ids: tuple[UUID, ...]
    exception_ids: tuple[UUID, ...]
    disputes_created: tuple[UUID, ...]
    errors: tuple[ItemError, ...]

    @property
    def summary(self) -> dict[str, Any]:
        return {
            **self.engine_result.summary.as_dict(),
            "applied_matches": len(self.matched_ids),
            "applied_exceptions": len(self.exception_ids),
            "disputes_created": len(self.disputes_created),
            "errors": len(self.errors),
        }


class ReconciliationService:
    """
    Runs reconciliation for a billing period.

    Non-goals:
        - Does NOT call ``session.commit()``; per-invoice SAVEPOINTs nest
          inside the caller's transaction.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: ClearingConfig | None = None,
        auditor: AuditorService | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._config = config or get_active_config()
        self._auditor = auditor or AuditorService(session, self._clock)
        self._selector = LedgerSelector(session)
        self._store = LedgerStore(session, self._auditor, self._clock)

    def default_rules(self) -> RuleSet:
        return RuleSet.from_rules(self._config.matching.rules)

    def run(
        self,
        period_start: date,
        period_end: date,
        actor_id: UUID,
        rules: RuleSet | None = None,
    ) -> ReconciliationRunResult:
        if period_start > period_end:
            raise InvalidDateRangeError(period_start, period_end)

        rules = rules or self.default_rules()
        run_id = uuid4()

        with LogContext.bind(run_id=str(run_id), actor_id=str(actor_id)):
            logger.info(
                "reconciliation_run_started",
                extra={
                    "period_start": period_start.isoformat(),
                    "period_end": period_end.isoformat(),
                },
            )

            candidates = self._selector.find_invoices_in_period(
                period_start, period_end, RECONCILABLE_STATUSES
            )
            contracts = self._selector.get_contracts(inv.contract_id for inv in candidates)

            errors: list[ItemError] = []
            invoices: list[InvoiceRecord] = []
            for invoice in candidates:
                if invoice.contract_id not in contracts:
                    errors.append(
                        ItemError.from_exception(
                            invoice.invoice_id, ContractNotFoundError(str(invoice.contract_id))
                        )
                    )
                    continue
                invoices.append(invoice)

            window_start, window_end = eligibility_window(
                period_start, period_end, rules.time_window.duration
            )
            deliveries = self._selector.find_deliveries_in_range(
                window_start, window_end, contracts.keys()
            )

            result = reconcile(
                invoices=invoices,
                deliveries=deliveries,
                rules=rules,
                high_variance_percent=self._config.matching.high_variance_percent,
                medium_variance_percent=self._config.matching.medium_variance_percent,
            )

            by_id = {inv.invoice_id: inv for inv in invoices}
            matched: list[UUID] = []
            excepted: list[UUID] = []
            disputes: list[UUID] = []

            for match in result.matches:
                if self._apply_match(by_id[match.invoice_id], match, actor_id, errors):
                    matched.append(match.invoice_id)

            for exc_result in result.exceptions:
                dispute_id = self._apply_exception(
                    by_id[exc_result.invoice_id], exc_result, actor_id, errors
                )
                if dispute_id is not False:
                    excepted.append(exc_result.invoice_id)
                    if dispute_id is not None:
                        disputes.append(dispute_id)

            run_result = ReconciliationRunResult(
                run_id=run_id,
                period_start=period_start,
                period_end=period_end,
                engine_result=result,
                matched_ids=tuple(matched),
                exception_ids=tuple(excepted),
                disputes_created=tuple(disputes),
                errors=tuple(errors),
            )
            self._auditor.record_reconciliation_run(
                run_id,
                {
                    **run_result.summary,
                    "period_start": period_start,
                    "period_end": period_end,
                    "rules": rules.as_dict(),
                    "config_checksum": self._config.checksum,
                },
                actor_id,
            )
            logger.info("reconciliation_run_completed", extra=run_result.summary)
            return run_result

    def _apply_match(
        self,
        invoice: InvoiceRecord,
        match: MatchResult,
        actor_id: UUID,
        errors: list[ItemError],
    ) -> bool:
        savepoint = self._session.begin_nested()
        try:
            self._store.update_invoice_status(
                invoice.invoice_id,
                InvoiceStatus.MATCHED,
                actor_id,
                confidence_score=match.confidence_score,
                matched_delivery_ids=match.delivery_ids,
                expected_version=invoice.version,
            )
            savepoint.commit()
            return True
        except ClearingKernelError as exc:
            savepoint.rollback()
            logger.warning(
                "reconciliation_item_failed",
                extra={"invoice_ref": invoice.invoice_ref, "error_code": exc.code},
            )
            errors.append(ItemError.from_exception(invoice.invoice_id, exc))
            return False

    def _apply_exception(
        self,
        invoice: InvoiceRecord,
        exc_result: ExceptionResult,
        actor_id: UUID,
        errors: list[ItemError],
    ) -> UUID | None | bool:
        """
        PARTIALLY_MATCHED plus, for HIGH severity, an OPEN dispute.

        Returns the new dispute id, ``None`` when no dispute was needed, or
        ``False`` when the invoice failed and was rolled back.
        """
        savepoint = self._session.begin_nested()
        try:
            self._store.update_invoice_status(
                invoice.invoice_id,
                InvoiceStatus.PARTIALLY_MATCHED,
                actor_id,
                expected_version=invoice.version,
            )
            dispute_id = None
            if (
                exc_result.severity == ExceptionSeverity.HIGH
                and not self._selector.find_open_disputes(invoice.invoice_id)
            ):
                dispute_id = self._store.create_dispute(
                    NewDispute(
                        invoice_id=invoice.invoice_id,
                        contract_id=invoice.contract_id,
                        raised_by_id=invoice.counterparty_id,
                        received_by_id=invoice.issuer_id,
                        reason_code=DisputeReason.QUANTITY_VARIANCE,
                        description=exc_result.recommendation,
                        sla_deadline=self._clock.now() + timedelta(days=self._config.dispute.sla_days),
                    ),
                    actor_id,
                )
            savepoint.commit()
            return dispute_id
        except ClearingKernelError as exc:
            savepoint.rollback()
            logger.warning(
                "reconciliation_item_failed",
                extra={"invoice_ref": invoice.invoice_ref, "error_code": exc.code},
            )
            errors.append(ItemError.from_exception(invoice.invoice_id, exc))
            return False
