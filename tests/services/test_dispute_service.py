"""
Tests for DisputeService.

Covers:
- Raising a dispute moves the invoice to DISPUTED
- Lifecycle transitions and illegal moves
- Resolution releases a matched invoice
- SLA breach detection
- Priority triage
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from clearing_kernel.domain.values import DisputeReason, DisputeStatus, InvoiceStatus
from clearing_kernel.exceptions import InvalidTransitionError, InvoiceNotFoundError
from clearing_kernel.models.audit_event import AuditAction
from clearing_kernel.services.dispute_service import DisputeService, dispute_priority


@pytest.fixture
def disputes(session, auditor, deterministic_clock):
    return DisputeService(session, auditor, deterministic_clock)


@pytest.fixture
def invoice(parties, create_contract, create_invoice):
    contract = create_contract(parties["VRA"], parties["ECG"])
    return create_invoice(contract, parties["VRA"], parties["ECG"], "1000", energy="100")


class TestRaiseDispute:
    def test_raise_moves_invoice_to_disputed(self, disputes, invoice, parties, selector, test_actor_id, deterministic_clock):
        dispute = disputes.raise_dispute(
            invoice.invoice_id,
            parties["ECG"].party_id,
            DisputeReason.QUANTITY_VARIANCE,
            "Meter readings disagree",
            test_actor_id,
            amount_in_dispute=Decimal("250"),
        )

        assert dispute.status == DisputeStatus.OPEN
        assert dispute.raised_by_id == parties["ECG"].party_id
        assert dispute.received_by_id == parties["VRA"].party_id
        assert dispute.sla_deadline == deterministic_clock.now() + timedelta(days=7)
        assert dispute.dispute_ref.startswith("DSP-")
        assert selector.get_invoice(invoice.invoice_id).status == InvoiceStatus.DISPUTED

    def test_issuer_raising_targets_counterparty(self, disputes, invoice, parties, test_actor_id):
        dispute = disputes.raise_dispute(
            invoice.invoice_id, parties["VRA"].party_id, DisputeReason.OTHER, "", test_actor_id
        )
        assert dispute.received_by_id == parties["ECG"].party_id

    def test_unknown_invoice(self, disputes, parties, test_actor_id):
        with pytest.raises(InvoiceNotFoundError):
            disputes.raise_dispute(uuid4(), parties["ECG"].party_id, DisputeReason.OTHER, "", test_actor_id)

    def test_paid_invoice_keeps_status(self, disputes, invoice, parties, store, selector, test_actor_id, matched_invoice):
        matched_invoice(invoice)
        store.update_invoice_status(invoice.invoice_id, InvoiceStatus.PAID, test_actor_id)

        disputes.raise_dispute(invoice.invoice_id, parties["ECG"].party_id, DisputeReason.OTHER, "", test_actor_id)

        assert selector.get_invoice(invoice.invoice_id).status == InvoiceStatus.PAID

    def test_audited(self, disputes, invoice, parties, auditor, test_actor_id):
        dispute = disputes.raise_dispute(
            invoice.invoice_id, parties["ECG"].party_id, DisputeReason.OTHER, "", test_actor_id
        )
        trace = auditor.get_trace("Dispute", dispute.dispute_id)
        assert trace.actions == (AuditAction.DISPUTE_RAISED,)


class TestLifecycle:
    @pytest.fixture
    def dispute(self, disputes, invoice, parties, test_actor_id):
        return disputes.raise_dispute(
            invoice.invoice_id, parties["ECG"].party_id, DisputeReason.PRICE_VARIANCE, "", test_actor_id
        )

    def test_review_evidence_loop(self, disputes, dispute, test_actor_id):
        assert disputes.start_review(dispute.dispute_id, test_actor_id).status == DisputeStatus.UNDER_REVIEW
        assert disputes.request_evidence(dispute.dispute_id, test_actor_id).status == DisputeStatus.EVIDENCE_REQUESTED
        assert disputes.start_review(dispute.dispute_id, test_actor_id).status == DisputeStatus.UNDER_REVIEW

    def test_cannot_resolve_without_review(self, disputes, dispute, test_actor_id):
        with pytest.raises(InvalidTransitionError):
            disputes.resolve(dispute.dispute_id, test_actor_id)

    def test_resolve_records_ruling(self, disputes, dispute, test_actor_id, deterministic_clock):
        disputes.start_review(dispute.dispute_id, test_actor_id)
        resolved = disputes.resolve(dispute.dispute_id, test_actor_id, ruling_amount=Decimal("900"))

        assert resolved.status == DisputeStatus.RESOLVED
        assert resolved.ruling_amount == Decimal("900")
        assert resolved.resolved_at == deterministic_clock.now()

    def test_escalate_then_resolve(self, disputes, dispute, test_actor_id):
        disputes.escalate(dispute.dispute_id, test_actor_id)
        assert disputes.resolve(dispute.dispute_id, test_actor_id).status == DisputeStatus.RESOLVED

    def test_closed_is_terminal(self, disputes, dispute, test_actor_id):
        disputes.close(dispute.dispute_id, test_actor_id)
        with pytest.raises(InvalidTransitionError):
            disputes.start_review(dispute.dispute_id, test_actor_id)

    def test_unmatched_invoice_stays_disputed_after_resolution(self, disputes, dispute, invoice, selector, test_actor_id):
        disputes.start_review(dispute.dispute_id, test_actor_id)
        disputes.resolve(dispute.dispute_id, test_actor_id)
        assert selector.get_invoice(invoice.invoice_id).status == InvoiceStatus.DISPUTED


class TestInvoiceRelease:
    def test_matched_invoice_released_when_last_dispute_closes(
        self, disputes, invoice, parties, selector, matched_invoice, test_actor_id
    ):
        matched_invoice(invoice)
        first = disputes.raise_dispute(invoice.invoice_id, parties["ECG"].party_id, DisputeReason.OTHER, "", test_actor_id)
        second = disputes.raise_dispute(invoice.invoice_id, parties["ECG"].party_id, DisputeReason.OTHER, "", test_actor_id)

        disputes.close(first.dispute_id, test_actor_id)
        assert selector.get_invoice(invoice.invoice_id).status == InvoiceStatus.DISPUTED

        disputes.close(second.dispute_id, test_actor_id)
        assert selector.get_invoice(invoice.invoice_id).status == InvoiceStatus.MATCHED


class TestSlaBreaches:
    def test_breach_after_deadline(self, disputes, invoice, parties, test_actor_id, deterministic_clock):
        dispute = disputes.raise_dispute(invoice.invoice_id, parties["ECG"].party_id, DisputeReason.OTHER, "", test_actor_id)

        assert disputes.find_sla_breaches() == []
        deterministic_clock.advance(days=8)
        assert [d.dispute_id for d in disputes.find_sla_breaches()] == [dispute.dispute_id]

    def test_closed_dispute_never_breaches(self, disputes, invoice, parties, test_actor_id, deterministic_clock):
        dispute = disputes.raise_dispute(invoice.invoice_id, parties["ECG"].party_id, DisputeReason.OTHER, "", test_actor_id)
        disputes.close(dispute.dispute_id, test_actor_id)
        deterministic_clock.advance(days=30)
        assert disputes.find_sla_breaches() == []


class TestPriority:
    @pytest.mark.parametrize(
        "amount,expected",
        [(None, "low"), ("50000000", "low"), ("50000001", "medium"), ("100000001", "high")],
    )
    def test_thresholds(self, amount, expected):
        assert dispute_priority(Decimal(amount) if amount else None) == expected
