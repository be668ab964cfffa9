"""
Module: clearing_engines.aging
Responsibility:
    Exception severity classification for reconciliation variances, and
    receivables aging of outstanding invoices into day buckets.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import clearing_kernel/domain.

Invariants enforced:
    - Purity: ``as_of`` is always a parameter; no clock access.
    - Decimal-only arithmetic.
    - Every outstanding invoice lands in exactly one bucket.

Failure modes:
    - ValueError for malformed bucket definitions or severity thresholds.

Audit relevance:
    Severity decides whether reconciliation opens a dispute; the aging
    report feeds the overdue-exposure factor of the settlement risk score.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Sequence
from uuid import UUID

from clearing_engines.tracer import traced_engine
from clearing_kernel.domain.dtos import InvoiceRecord, PaymentRecord
from clearing_kernel.domain.values import ExceptionSeverity, PaymentStatus
from clearing_kernel.logging_config import get_logger

logger = get_logger("engines.aging")

HIGH_VARIANCE_PERCENT = Decimal("20")
MEDIUM_VARIANCE_PERCENT = Decimal("10")

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


def classify_variance_severity(
    variance_percent: Decimal,
    high_threshold: Decimal = HIGH_VARIANCE_PERCENT,
    medium_threshold: Decimal = MEDIUM_VARIANCE_PERCENT,
) -> ExceptionSeverity:
    """HIGH above ``high_threshold``, MEDIUM above ``medium_threshold``, else LOW."""
    if medium_threshold > high_threshold:
        raise ValueError("medium_threshold cannot exceed high_threshold")
    if variance_percent > high_threshold:
        return ExceptionSeverity.HIGH
    if variance_percent > medium_threshold:
        return ExceptionSeverity.MEDIUM
    return ExceptionSeverity.LOW


def dispute_rate(invoices: Sequence[InvoiceRecord], disputed_ids: Iterable[UUID]) -> Decimal:
    """Percentage of ``invoices`` with an open dispute; 0 for no invoices."""
    if not invoices:
        return _ZERO
    disputed = frozenset(disputed_ids)
    count = sum(1 for inv in invoices if inv.invoice_id in disputed)
    return Decimal(count) * _HUNDRED / Decimal(len(invoices))


@dataclass(frozen=True)
class AgeBucket:
    """
    Contiguous range of days past due.

    Guarantees:
        - ``min_days >= 0`` and ``max_days >= min_days`` when bounded.
    """

    name: str
    min_days: int
    max_days: int | None  # None = unbounded

    def __post_init__(self) -> None:
        if self.min_days < 0:
            raise ValueError("min_days cannot be negative")
        if self.max_days is not None and self.max_days < self.min_days:
            raise ValueError("max_days cannot be less than min_days")

    def contains(self, age_days: int) -> bool:
        if age_days < self.min_days:
            return False
        return self.max_days is None or age_days <= self.max_days


STANDARD_BUCKETS: tuple[AgeBucket, ...] = (
    AgeBucket("0-30", 0, 30),
    AgeBucket("31-60", 31, 60),
    AgeBucket("61-90", 61, 90),
    AgeBucket("90+", 91, None),
)


@dataclass(frozen=True)
class AgedInvoice:
    invoice_id: UUID
    invoice_ref: str
    counterparty_id: UUID
    issuer_id: UUID
    outstanding: Decimal
    days_past_due: int
    bucket: AgeBucket
    status: str  # "current" | "overdue" | "disputed"

    @property
    def is_overdue(self) -> bool:
        return self.days_past_due > 0


@dataclass(frozen=True)
class AgingReport:
    """
    Snapshot of outstanding receivables.

    Guarantees:
        - ``total_outstanding`` equals the sum of item outstanding amounts.
        - ``total_by_bucket`` has an entry for every bucket.
    """

    as_of: date
    buckets: tuple[AgeBucket, ...]
    items: tuple[AgedInvoice, ...]

    @property
    def item_count(self) -> int:
        return len(self.items)

    @property
    def total_outstanding(self) -> Decimal:
        return sum((item.outstanding for item in self.items), _ZERO)

    def total_by_bucket(self) -> dict[str, Decimal]:
        totals = {bucket.name: _ZERO for bucket in self.buckets}
        for item in self.items:
            totals[item.bucket.name] += item.outstanding
        return totals

    def total_by_counterparty(self) -> dict[UUID, Decimal]:
        totals: dict[UUID, Decimal] = defaultdict(lambda: _ZERO)
        for item in self.items:
            totals[item.counterparty_id] += item.outstanding
        return dict(totals)

    def overdue_amount(self) -> Decimal:
        return sum((item.outstanding for item in self.items if item.is_overdue), _ZERO)

    def disputed_amount(self) -> Decimal:
        return sum((item.outstanding for item in self.items if item.status == "disputed"), _ZERO)


class AgingCalculator:
    """
    Receivables aging over invoice DTOs.

    Contract:
        Pure -- no I/O, no database access.  Days past due are counted from
        the due date, or from the end of the billing period when an invoice
        has no due date.
    """

    def __init__(self, buckets: Sequence[AgeBucket] = STANDARD_BUCKETS):
        if not buckets:
            raise ValueError("at least one aging bucket is required")
        self.buckets = tuple(buckets)

    def days_past_due(self, invoice: InvoiceRecord, as_of: date) -> int:
        reference = invoice.due_date or invoice.period_end
        return (as_of - reference).days

    def classify(self, age_days: int) -> AgeBucket:
        """
        Bucket for ``age_days``; not-yet-due ages land in the first bucket.

        Raises:
            ValueError: If the configured buckets leave a gap.
        """
        if age_days < 0:
            return self.buckets[0]
        for bucket in self.buckets:
            if bucket.contains(age_days):
                return bucket
        logger.warning(
            "age_classification_no_bucket",
            extra={"age_days": age_days, "bucket_count": len(self.buckets)},
        )
        raise ValueError(f"Age {age_days} does not fit any bucket")

    @traced_engine("aging", "1.0", fingerprint_fields=("invoices", "payments", "as_of"))
    def age_invoices(
        self,
        *,
        invoices: Sequence[InvoiceRecord],
        payments: Sequence[PaymentRecord],
        as_of: date,
        disputed_ids: Iterable[UUID] = (),
    ) -> AgingReport:
        """Age every invoice with a strictly positive outstanding balance."""
        paid: dict[UUID, Decimal] = defaultdict(lambda: _ZERO)
        for payment in payments:
            if payment.status == PaymentStatus.COMPLETED and payment.invoice_id is not None:
                paid[payment.invoice_id] += payment.amount

        disputed = frozenset(disputed_ids)
        items: list[AgedInvoice] = []
        for invoice in invoices:
            outstanding = invoice.total_amount - paid[invoice.invoice_id]
            if outstanding <= 0:
                continue
            age = self.days_past_due(invoice, as_of)
            if invoice.invoice_id in disputed:
                status = "disputed"
            elif age > 0:
                status = "overdue"
            else:
                status = "current"
            items.append(
                AgedInvoice(
                    invoice_id=invoice.invoice_id,
                    invoice_ref=invoice.invoice_ref,
                    counterparty_id=invoice.counterparty_id,
                    issuer_id=invoice.issuer_id,
                    outstanding=outstanding,
                    days_past_due=age,
                    bucket=self.classify(age),
                    status=status,
                )
            )

        report = AgingReport(as_of=as_of, buckets=self.buckets, items=tuple(items))
        logger.info(
            "aging_report_generated",
            extra={
                "as_of": as_of.isoformat(),
                "item_count": report.item_count,
                "total_outstanding": str(report.total_outstanding),
                "overdue_amount": str(report.overdue_amount()),
            },
        )
        return report
