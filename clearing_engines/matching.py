"""
clearing_engines.matching -- invoice-to-delivery matching for reconciliation.

Responsibility:
    Compares the commodity quantity declared on each invoice with the
    metered deliveries recorded against the same contract around the
    billing period.  Produces a match (with a confidence score) when the
    variance is inside the tolerance band, or a classified exception
    otherwise.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import clearing_kernel/domain and sibling engines.
    Severity classification is delegated to ``clearing_engines.aging``.

Invariants enforced:
    - Replay safety: identical invoices, deliveries and rules produce an
      identical result, including confidence scores.
    - Decimal arithmetic only.
    - Fail-soft: unreadable line items are an exception outcome (100%
      variance), never a raised error.
    - Every input invoice appears exactly once, as a match or an
      exception.

Failure modes:
    - InvalidRuleError from ``RuleSet.from_rules`` for unknown rule types,
      duplicate rules or out-of-range values.

Audit relevance:
    The match / exception split drives every invoice status change written
    by a reconciliation run.  Each invocation is traced via
    ``@traced_engine``.

Usage:
    from clearing_engines.matching import RuleSet, reconcile

    result = reconcile(
        invoices=invoices,
        deliveries=deliveries,
        rules=RuleSet.from_rules([{"type": "ToleranceBand", "value": 3, "unit": "percent"}]),
    )
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from clearing_engines.aging import (
    HIGH_VARIANCE_PERCENT,
    MEDIUM_VARIANCE_PERCENT,
    classify_variance_severity,
)
from clearing_engines.tracer import traced_engine
from clearing_kernel.domain.dtos import DeliveryRecord, InvoiceRecord
from clearing_kernel.domain.values import ExceptionSeverity, ExceptionType
from clearing_kernel.exceptions import InvalidRuleError
from clearing_kernel.logging_config import get_logger

logger = get_logger("engines.matching")

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")
_SCORE_QUANTUM = Decimal("0.01")

NO_DELIVERIES_RECOMMENDATION = "Verify delivery data or invoice period"


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TimeWindow:
    """Slack around the billing period within which deliveries are eligible."""

    duration: timedelta = timedelta(days=7)


@dataclass(frozen=True)
class ToleranceBand:
    """Maximum quantity variance, in percent, for an automatic match."""

    percent: Decimal = Decimal("5")


@dataclass(frozen=True)
class ContractTermsFactor:
    """Contract-specific adjustment multiplier.  Carried through unchanged."""

    multiplier: Decimal = Decimal("1")


_TIME_UNITS: dict[str, timedelta] = {
    "days": timedelta(days=1),
    "day": timedelta(days=1),
    "hours": timedelta(hours=1),
    "hour": timedelta(hours=1),
    "minutes": timedelta(minutes=1),
    "minute": timedelta(minutes=1),
}


def _normalize_type(rule_type: str) -> str:
    return str(rule_type).replace("_", "").replace("-", "").lower()


def _rule_decimal(rule_type: str, value: Any) -> Decimal:
    if isinstance(value, bool):
        raise InvalidRuleError(rule_type, f"value {value!r} is not a number")
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidRuleError(rule_type, f"value {value!r} is not a number") from exc
    if not result.is_finite():
        raise InvalidRuleError(rule_type, f"value {value!r} is not finite")
    return result


@dataclass(frozen=True)
class RuleSet:
    """
    Named, typed matching parameters.

    Contract:
        Defaults are a 7 day window, a 5% tolerance band and a factor of 1.
    Guarantees:
        - ``time_window.duration >= 0``.
        - ``0 <= tolerance_band.percent <= 100``.
        - ``contract_terms.multiplier > 0``.
    """

    time_window: TimeWindow = field(default_factory=TimeWindow)
    tolerance_band: ToleranceBand = field(default_factory=ToleranceBand)
    contract_terms: ContractTermsFactor = field(default_factory=ContractTermsFactor)

    def __post_init__(self) -> None:
        if self.time_window.duration < timedelta(0):
            raise InvalidRuleError("TimeWindow", "duration cannot be negative")
        if not _ZERO <= self.tolerance_band.percent <= _HUNDRED:
            raise InvalidRuleError("ToleranceBand", "percent must be within [0, 100]")
        if self.contract_terms.multiplier <= 0:
            raise InvalidRuleError("ContractTermsFactor", "multiplier must be > 0")

    @classmethod
    def from_rules(cls, rules: Iterable[Mapping[str, Any]]) -> RuleSet:
        """
        Build a RuleSet from ``{"type", "value", "unit"}`` mappings.

        Types are matched case- and separator-insensitively
        (``TimeWindow``, ``TIME_WINDOW``).  Missing types keep their default.

        Raises:
            InvalidRuleError: Unknown type, duplicate type, bad unit or value.
        """
        seen: set[str] = set()
        time_window = TimeWindow()
        tolerance_band = ToleranceBand()
        contract_terms = ContractTermsFactor()

        for rule in rules:
            if not isinstance(rule, Mapping) or "type" not in rule:
                raise InvalidRuleError(str(rule), "rule must be a mapping with a 'type'")
            rule_type = str(rule["type"])
            key = _normalize_type(rule_type)
            if key in seen:
                raise InvalidRuleError(rule_type, "rule given more than once")
            seen.add(key)

            value = _rule_decimal(rule_type, rule.get("value"))
            unit = str(rule.get("unit") or "").lower()

            if key == "timewindow":
                step = _TIME_UNITS.get(unit or "days")
                if step is None:
                    raise InvalidRuleError(rule_type, f"unsupported unit {unit!r}")
                time_window = TimeWindow(duration=step * float(value))
            elif key == "toleranceband":
                if unit not in ("", "percent", "%"):
                    raise InvalidRuleError(rule_type, f"unsupported unit {unit!r}")
                tolerance_band = ToleranceBand(percent=value)
            elif key == "contracttermsfactor":
                if unit not in ("", "multiplier", "factor", "x"):
                    raise InvalidRuleError(rule_type, f"unsupported unit {unit!r}")
                contract_terms = ContractTermsFactor(multiplier=value)
            else:
                raise InvalidRuleError(rule_type, "unknown rule type")

        return cls(
            time_window=time_window,
            tolerance_band=tolerance_band,
            contract_terms=contract_terms,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "time_window_seconds": int(self.time_window.duration.total_seconds()),
            "tolerance_percent": self.tolerance_band.percent,
            "contract_terms_multiplier": self.contract_terms.multiplier,
        }


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MatchResult:
    invoice_id: UUID
    invoice_ref: str
    delivery_ids: tuple[UUID, ...]
    confidence_score: Decimal
    matched_amount: Decimal
    variance_percent: Decimal
    total_delivered: Decimal
    expected_quantity: Decimal


@dataclass(frozen=True)
class ExceptionResult:
    """
    An invoice that could not be matched automatically.

    ``confidence_score`` and ``variance_percent`` are ``None`` when no
    deliveries were found.
    """

    invoice_id: UUID
    invoice_ref: str
    exception_type: ExceptionType
    severity: ExceptionSeverity
    recommendation: str
    variance_percent: Decimal | None = None
    confidence_score: Decimal | None = None
    delivery_ids: tuple[UUID, ...] = ()
    total_delivered: Decimal = _ZERO
    expected_quantity: Decimal = _ZERO


@dataclass(frozen=True)
class ReconciliationSummary:
    total_invoices: int
    matched_count: int
    exception_count: int
    match_rate: Decimal
    total_matched_amount: Decimal

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_invoices": self.total_invoices,
            "matched_count": self.matched_count,
            "exception_count": self.exception_count,
            "match_rate": self.match_rate,
            "total_matched_amount": self.total_matched_amount,
        }


@dataclass(frozen=True)
class ReconciliationResult:
    matches: tuple[MatchResult, ...]
    exceptions: tuple[ExceptionResult, ...]
    summary: ReconciliationSummary
    rules: RuleSet


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def eligibility_window(period_start: date, period_end: date, window: timedelta) -> tuple[datetime, datetime]:
    """
    Inclusive timestamp bounds for deliveries eligible for an invoice.

    The period is taken as whole UTC days: from the start of
    ``period_start`` to the last instant of ``period_end``.
    """
    start = datetime.combine(period_start, time.min, tzinfo=timezone.utc) - window
    end = datetime.combine(period_end, time.max, tzinfo=timezone.utc) + window
    return start, end


def _as_utc(ts: datetime) -> datetime:
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


def variance_percent(total_delivered: Decimal, expected: Decimal) -> Decimal:
    """``|delivered - expected| / expected * 100``; 100 when nothing positive was expected."""
    if expected <= 0:
        return _HUNDRED
    return abs(total_delivered - expected) / expected * _HUNDRED


def confidence_score(variance: Decimal) -> Decimal:
    """``max(0, 100 - variance)`` rounded to hundredths."""
    return max(_ZERO, _HUNDRED - variance).quantize(_SCORE_QUANTUM, rounding=ROUND_HALF_UP)


@traced_engine("matching", "1.0", fingerprint_fields=("invoices", "deliveries", "rules"))
def reconcile(
    *,
    invoices: Sequence[InvoiceRecord],
    deliveries: Sequence[DeliveryRecord],
    rules: RuleSet | None = None,
    high_variance_percent: Decimal = HIGH_VARIANCE_PERCENT,
    medium_variance_percent: Decimal = MEDIUM_VARIANCE_PERCENT,
) -> ReconciliationResult:
    """
    Match each invoice against the deliveries of its contract.

    Preconditions:
        ``invoices`` are PENDING or PARTIALLY_MATCHED; the caller filters.

    Postconditions:
        ``len(matches) + len(exceptions) == len(invoices)``; matches and
        exceptions keep the input order of ``invoices``.
    """
    rules = rules or RuleSet()
    window = rules.time_window.duration
    tolerance = rules.tolerance_band.percent

    by_contract: dict[UUID, list[DeliveryRecord]] = defaultdict(list)
    for delivery in deliveries:
        by_contract[delivery.contract_id].append(delivery)
    for contract_deliveries in by_contract.values():
        contract_deliveries.sort(key=lambda d: (_as_utc(d.timestamp), d.delivery_ref))

    matches: list[MatchResult] = []
    exceptions: list[ExceptionResult] = []

    for invoice in invoices:
        start, end = eligibility_window(invoice.period_start, invoice.period_end, window)
        selected = [
            d for d in by_contract.get(invoice.contract_id, ())
            if start <= _as_utc(d.timestamp) <= end
        ]

        if not selected:
            exceptions.append(
                ExceptionResult(
                    invoice_id=invoice.invoice_id,
                    invoice_ref=invoice.invoice_ref,
                    exception_type=ExceptionType.NO_MATCHING_DELIVERIES,
                    severity=ExceptionSeverity.HIGH,
                    recommendation=NO_DELIVERIES_RECOMMENDATION,
                    expected_quantity=invoice.quantities.quantity,
                )
            )
            continue

        delivery_ids = tuple(d.delivery_id for d in selected)
        total_delivered = sum((d.quantity for d in selected), _ZERO)
        expected = invoice.quantities.quantity
        variance = variance_percent(total_delivered, expected)
        score = confidence_score(variance)

        if variance <= tolerance:
            matches.append(
                MatchResult(
                    invoice_id=invoice.invoice_id,
                    invoice_ref=invoice.invoice_ref,
                    delivery_ids=delivery_ids,
                    confidence_score=score,
                    matched_amount=invoice.total_amount,
                    variance_percent=variance,
                    total_delivered=total_delivered,
                    expected_quantity=expected,
                )
            )
            continue

        if invoice.quantities.malformed:
            logger.warning(
                "invoice_line_items_malformed",
                extra={"invoice_ref": invoice.invoice_ref},
            )
        exceptions.append(
            ExceptionResult(
                invoice_id=invoice.invoice_id,
                invoice_ref=invoice.invoice_ref,
                exception_type=ExceptionType.QUANTITY_VARIANCE,
                severity=classify_variance_severity(
                    variance, high_variance_percent, medium_variance_percent
                ),
                recommendation=f"Quantity variance of {variance:.1f}% exceeds tolerance",
                variance_percent=variance,
                confidence_score=score,
                delivery_ids=delivery_ids,
                total_delivered=total_delivered,
                expected_quantity=expected,
            )
        )

    total = len(invoices)
    match_rate = (Decimal(len(matches)) * _HUNDRED / Decimal(total)) if total else _ZERO
    summary = ReconciliationSummary(
        total_invoices=total,
        matched_count=len(matches),
        exception_count=len(exceptions),
        match_rate=match_rate,
        total_matched_amount=sum((m.matched_amount for m in matches), _ZERO),
    )

    logger.info(
        "reconciliation_computed",
        extra={
            "total_invoices": total,
            "matched_count": summary.matched_count,
            "exception_count": summary.exception_count,
            "match_rate": str(match_rate),
        },
    )
    return ReconciliationResult(
        matches=tuple(matches),
        exceptions=tuple(exceptions),
        summary=summary,
        rules=rules,
    )
