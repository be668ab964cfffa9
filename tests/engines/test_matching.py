"""
Tests for the Matching Engine.

Covers:
- RuleSet construction from {type, value, unit} rules
- Eligibility window around the billing period
- Tolerance boundary and variance severity
- Exceptions for invoices without deliveries or readable quantities
- Summary arithmetic
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from clearing_engines.matching import (
    NO_DELIVERIES_RECOMMENDATION,
    RuleSet,
    ToleranceBand,
    confidence_score,
    eligibility_window,
    reconcile,
    variance_percent,
)
from clearing_kernel.domain.values import ExceptionSeverity, ExceptionType
from clearing_kernel.exceptions import InvalidRuleError


class TestRuleSet:
    def test_defaults(self):
        rules = RuleSet()
        assert rules.time_window.duration == timedelta(days=7)
        assert rules.tolerance_band.percent == Decimal("5")
        assert rules.contract_terms.multiplier == Decimal("1")

    def test_from_rules_parses_units(self):
        rules = RuleSet.from_rules([
            {"type": "TimeWindow", "value": 48, "unit": "hours"},
            {"type": "TOLERANCE_BAND", "value": "2.5", "unit": "%"},
            {"type": "contract-terms-factor", "value": 1.1, "unit": "multiplier"},
        ])
        assert rules.time_window.duration == timedelta(hours=48)
        assert rules.tolerance_band.percent == Decimal("2.5")
        assert rules.contract_terms.multiplier == Decimal("1.1")

    def test_missing_types_keep_defaults(self):
        rules = RuleSet.from_rules([{"type": "ToleranceBand", "value": 3}])
        assert rules.time_window.duration == timedelta(days=7)
        assert rules.tolerance_band.percent == Decimal("3")

    @pytest.mark.parametrize(
        "rule",
        [
            {"type": "PriceBand", "value": 1},
            {"type": "TimeWindow", "value": 1, "unit": "fortnights"},
            {"type": "ToleranceBand", "value": "lots"},
            {"type": "ToleranceBand", "value": 150},
            {"type": "ContractTermsFactor", "value": 0},
            {"value": 5},
        ],
    )
    def test_invalid_rules_rejected(self, rule):
        with pytest.raises(InvalidRuleError):
            RuleSet.from_rules([rule])

    def test_duplicate_rule_type_rejected(self):
        with pytest.raises(InvalidRuleError):
            RuleSet.from_rules([
                {"type": "ToleranceBand", "value": 5},
                {"type": "tolerance_band", "value": 6},
            ])


class TestHelpers:
    def test_eligibility_window_covers_whole_days(self):
        start, end = eligibility_window(date(2024, 10, 1), date(2024, 10, 31), timedelta(days=7))
        assert start == datetime(2024, 9, 24, tzinfo=timezone.utc)
        assert end.date() == date(2024, 11, 7)
        assert end.hour == 23 and end.minute == 59

    def test_variance_is_absolute(self):
        assert variance_percent(Decimal("90"), Decimal("100")) == Decimal("10")
        assert variance_percent(Decimal("110"), Decimal("100")) == Decimal("10")

    def test_zero_expected_quantity_is_full_variance(self):
        assert variance_percent(Decimal("50"), Decimal("0")) == Decimal("100")
        assert variance_percent(Decimal("1000"), Decimal("-1000")) == Decimal("100")

    def test_confidence_never_negative(self):
        assert confidence_score(Decimal("250")) == Decimal("0.00")
        assert confidence_score(Decimal("3.333")) == Decimal("96.67")


class TestReconcile:
    def test_exact_delivery_matches_with_full_confidence(self, invoice_record, delivery_record):
        invoice = invoice_record(energy="100")
        delivery = delivery_record(invoice.contract_id, "100")

        result = reconcile(invoices=[invoice], deliveries=[delivery])

        assert len(result.matches) == 1
        match = result.matches[0]
        assert match.invoice_id == invoice.invoice_id
        assert match.delivery_ids == (delivery.delivery_id,)
        assert match.confidence_score == Decimal("100.00")
        assert match.matched_amount == invoice.total_amount
        assert result.exceptions == ()

    def test_deliveries_are_summed_across_the_window(self, invoice_record, delivery_record):
        invoice = invoice_record(energy="100")
        deliveries = [
            delivery_record(invoice.contract_id, "60", datetime(2024, 10, 3, tzinfo=timezone.utc)),
            delivery_record(invoice.contract_id, "38", datetime(2024, 11, 5, tzinfo=timezone.utc)),
        ]

        result = reconcile(invoices=[invoice], deliveries=deliveries)

        assert result.matches[0].total_delivered == Decimal("98")
        assert result.matches[0].confidence_score == Decimal("98.00")

    def test_delivery_outside_window_ignored(self, invoice_record, delivery_record):
        invoice = invoice_record(energy="100")
        late = delivery_record(invoice.contract_id, "100", datetime(2024, 11, 9, tzinfo=timezone.utc))

        result = reconcile(invoices=[invoice], deliveries=[late])

        assert result.matches == ()
        assert result.exceptions[0].exception_type == ExceptionType.NO_MATCHING_DELIVERIES

    def test_other_contract_deliveries_ignored(self, invoice_record, delivery_record):
        invoice = invoice_record(energy="100")
        result = reconcile(invoices=[invoice], deliveries=[delivery_record(uuid4(), "100")])
        assert result.exceptions[0].exception_type == ExceptionType.NO_MATCHING_DELIVERIES

    def test_variance_exactly_at_tolerance_matches(self, invoice_record, delivery_record):
        invoice = invoice_record(energy="100")
        result = reconcile(invoices=[invoice], deliveries=[delivery_record(invoice.contract_id, "95")])
        assert len(result.matches) == 1
        assert result.matches[0].variance_percent == Decimal("5")

    def test_variance_just_over_tolerance_is_low_exception(self, invoice_record, delivery_record):
        invoice = invoice_record(energy="100")
        result = reconcile(invoices=[invoice], deliveries=[delivery_record(invoice.contract_id, "94.99")])

        exc = result.exceptions[0]
        assert exc.exception_type == ExceptionType.QUANTITY_VARIANCE
        assert exc.severity == ExceptionSeverity.LOW
        assert exc.recommendation == "Quantity variance of 5.0% exceeds tolerance"

    @pytest.mark.parametrize(
        "delivered,severity",
        [("89", ExceptionSeverity.MEDIUM), ("90", ExceptionSeverity.LOW), ("75", ExceptionSeverity.HIGH)],
    )
    def test_severity_bands(self, invoice_record, delivery_record, delivered, severity):
        invoice = invoice_record(energy="100")
        result = reconcile(invoices=[invoice], deliveries=[delivery_record(invoice.contract_id, delivered)])
        assert result.exceptions[0].severity == severity

    def test_no_deliveries_is_high_exception(self, invoice_record):
        invoice = invoice_record(energy="100")

        result = reconcile(invoices=[invoice], deliveries=[])

        exc = result.exceptions[0]
        assert exc.severity == ExceptionSeverity.HIGH
        assert exc.recommendation == NO_DELIVERIES_RECOMMENDATION
        assert exc.delivery_ids == ()

    def test_unreadable_quantity_is_full_variance(self, invoice_record, delivery_record):
        invoice = invoice_record(line_items={"energy": "n/a"})

        result = reconcile(invoices=[invoice], deliveries=[delivery_record(invoice.contract_id, "10")])

        exc = result.exceptions[0]
        assert exc.variance_percent == Decimal("100")
        assert exc.severity == ExceptionSeverity.HIGH

    def test_negative_declared_quantity_never_matches(self, invoice_record, delivery_record):
        invoice = invoice_record(energy="-1000")

        result = reconcile(invoices=[invoice], deliveries=[delivery_record(invoice.contract_id, "1000")])

        assert result.matches == ()
        exc = result.exceptions[0]
        assert exc.exception_type == ExceptionType.QUANTITY_VARIANCE
        assert exc.variance_percent == Decimal("100")
        assert exc.severity == ExceptionSeverity.HIGH
        assert exc.confidence_score == Decimal("0.00")

    def test_gas_quantity_used_when_energy_absent(self, invoice_record, delivery_record):
        invoice = invoice_record(line_items={"gas": "500"})
        result = reconcile(invoices=[invoice], deliveries=[delivery_record(invoice.contract_id, "500")])
        assert result.matches[0].expected_quantity == Decimal("500")

    def test_wider_tolerance_turns_exception_into_match(self, invoice_record, delivery_record):
        invoice = invoice_record(energy="100")
        deliveries = [delivery_record(invoice.contract_id, "92")]

        strict = reconcile(invoices=[invoice], deliveries=deliveries)
        loose = reconcile(
            invoices=[invoice], deliveries=deliveries, rules=RuleSet(tolerance_band=ToleranceBand(Decimal("10")))
        )

        assert len(strict.exceptions) == 1
        assert len(loose.matches) == 1

    def test_every_invoice_gets_exactly_one_outcome(self, invoice_record, delivery_record):
        invoices = [invoice_record(energy="100") for _ in range(5)]
        deliveries = [delivery_record(invoices[0].contract_id, "100"), delivery_record(invoices[2].contract_id, "70")]

        result = reconcile(invoices=invoices, deliveries=deliveries)

        outcome_ids = [m.invoice_id for m in result.matches] + [e.invoice_id for e in result.exceptions]
        assert sorted(outcome_ids, key=str) == sorted((i.invoice_id for i in invoices), key=str)
        assert result.summary.total_invoices == 5
        assert result.summary.matched_count == 1
        assert result.summary.exception_count == 4
        assert result.summary.match_rate == Decimal("20")

    def test_empty_input_has_zero_match_rate(self):
        result = reconcile(invoices=[], deliveries=[])
        assert result.summary.total_invoices == 0
        assert result.summary.match_rate == Decimal("0")

    def test_same_input_gives_same_output(self, invoice_record, delivery_record):
        invoice = invoice_record(energy="100")
        deliveries = [delivery_record(invoice.contract_id, "97")]

        first = reconcile(invoices=[invoice], deliveries=deliveries)
        second = reconcile(invoices=[invoice], deliveries=list(reversed(deliveries)))

        assert first.matches == second.matches

    def test_engine_emits_trace(self, invoice_record, captured_logs):
        reconcile(invoices=[invoice_record()], deliveries=[])
        traces = [r for r in captured_logs() if r["message"] == "CLEARING_ENGINE_TRACE"]
        assert traces and traces[0]["engine_name"] == "matching"
