"""
Tests for SettlementOrchestrator.

Covers:
- Computing a batch from matched invoices (period lock, fx validation)
- Multi-party approval and rejection
- Execution against escrow: success, insufficient funds, leg failure with
  compensation, reservation expiry, tampered snapshot
- The expired-execution sweeper
"""

from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from clearing_kernel.domain.dtos import NewPayment
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
    InvalidTransitionError,
    PeriodLockedError,
    SettlementNotExecutableError,
    SettlementSnapshotTamperedError,
    UnauthorizedApproverError,
)
from clearing_kernel.models.audit_event import AuditAction
from clearing_kernel.models.settlement import SettlementLeg
from clearing_kernel.services.payment_service import PaymentService
from clearing_services import (
    SettlementOrchestrator,
    TransferGateway,
    TransferReceipt,
    period_bounds,
)
from clearing_services.settlement_orchestrator import EXECUTED, FAILED, RESERVATION_FAILED

PERIOD = "2024-10"
ROLES = ("MOE", "MOF", "CAGD")


class FailingGateway(TransferGateway):
    """Rejects the transfer for one leg sequence number."""

    def __init__(self, fail_seq):
        self.fail_seq = fail_seq
        self.calls = []

    def transfer(self, batch, leg):
        self.calls.append(leg.leg_seq)
        if leg.leg_seq == self.fail_seq:
            return TransferReceipt(success=False, error="beneficiary account closed")
        return TransferReceipt(success=True, bank_reference=f"BANK-{leg.leg_seq}")


class ExplodingGateway(TransferGateway):
    def transfer(self, batch, leg):
        raise ConnectionError("bank link down")


class SlowGateway(TransferGateway):
    """Every transfer takes longer than the reservation lifetime."""

    def __init__(self, clock):
        self.clock = clock

    def transfer(self, batch, leg):
        self.clock.advance(hours=25)
        return TransferReceipt(success=True, bank_reference=f"SLOW-{leg.leg_seq}")


@pytest.fixture
def orchestrator_factory(session, deterministic_clock, clearing_config, auditor):
    def _build(gateway=None):
        return SettlementOrchestrator(session, deterministic_clock, clearing_config, gateway, auditor)

    return _build


@pytest.fixture
def orchestrator(orchestrator_factory):
    return orchestrator_factory()


@pytest.fixture
def october_book(parties, create_contract, create_invoice, matched_invoice):
    """
    Matched October invoices:

    - VRA -> ECG 1000, GRIDCO -> ECG 300, VRA -> GRIDCO 200

    Net: VRA +1200, ECG -1300, GRIDCO +100.  Two legs, ECG pays both.
    """
    vra, ecg, gridco = parties["VRA"], parties["ECG"], parties["GRIDCO"]
    invoices = {
        "vra_ecg": (create_contract(vra, ecg), vra, ecg, "1000"),
        "gridco_ecg": (create_contract(gridco, ecg), gridco, ecg, "300"),
        "vra_gridco": (create_contract(vra, gridco), vra, gridco, "200"),
    }
    return {
        name: matched_invoice(create_invoice(contract, issuer, counterparty, amount))
        for name, (contract, issuer, counterparty, amount) in invoices.items()
    }


@pytest.fixture
def funded_escrow(escrow, test_actor_id):
    escrow.open_account("GHS", test_actor_id)
    escrow.fund_account("GHS", Decimal("5000"), test_actor_id)
    return escrow


def _approve_all(orchestrator, batch_id):
    result = None
    for role in ROLES:
        result = orchestrator.approve(batch_id, uuid4(), role)
    return result


@pytest.fixture
def approved_batch(orchestrator, october_book, test_actor_id):
    batch = orchestrator.compute(PERIOD, Decimal("1"), test_actor_id).batch
    _approve_all(orchestrator, batch.batch_id)
    return batch


class TestPeriodBounds:
    def test_month(self):
        assert period_bounds("2024-02") == (date(2024, 2, 1), date(2024, 2, 29))

    @pytest.mark.parametrize("period", ["2024-13", "2024-1", "24-01", "2024/01", ""])
    def test_invalid(self, period):
        with pytest.raises(InvalidPeriodError):
            period_bounds(period)


class TestCompute:
    def test_batch_from_matched_invoices(self, orchestrator, october_book, parties, selector, test_actor_id):
        result = orchestrator.compute(PERIOD, Decimal("1"), test_actor_id)
        batch = result.batch

        assert batch.status == SettlementStatus.COMPUTED
        assert batch.batch_ref == "SB-202410-0001"
        assert batch.total_net_amount == Decimal("1300")
        assert batch.total_gross_amount == Decimal("1500")
        assert batch.risk_score == result.risk.score

        legs = selector.get_batch_legs(batch.batch_id)
        assert [(leg.payer_id, leg.payee_id, leg.amount) for leg in legs] == [
            (parties["ECG"].party_id, parties["VRA"].party_id, Decimal("1200")),
            (parties["ECG"].party_id, parties["GRIDCO"].party_id, Decimal("100")),
        ]
        assert set(selector.get_batch_invoice_ids(batch.batch_id)) == {
            inv.invoice_id for inv in october_book.values()
        }

    def test_unmatched_invoices_excluded(self, orchestrator, parties, create_contract, create_invoice, test_actor_id):
        contract = create_contract(parties["VRA"], parties["ECG"])
        create_invoice(contract, parties["VRA"], parties["ECG"], "1000")

        result = orchestrator.compute(PERIOD, Decimal("1"), test_actor_id)

        assert result.batch is None

    def test_completed_payments_reduce_exposure(
        self, session, auditor, deterministic_clock, orchestrator, october_book, parties, test_actor_id
    ):
        payments = PaymentService(session, auditor, deterministic_clock)
        invoice = october_book["vra_ecg"]
        payment = payments.record_payment(
            NewPayment(
                payer_id=parties["ECG"].party_id,
                payee_id=parties["VRA"].party_id,
                amount=Decimal("400"),
                currency="GHS",
                value_date=date(2024, 10, 31),
                invoice_id=invoice.invoice_id,
            ),
            test_actor_id,
        )
        payments.complete_payment(payment.payment_id, test_actor_id)

        result = orchestrator.compute(PERIOD, Decimal("1"), test_actor_id)

        assert result.batch.total_net_amount == Decimal("900")

    def test_foreign_currency_converted(self, orchestrator, parties, create_contract, create_invoice, matched_invoice, test_actor_id):
        contract = create_contract(parties["VRA"], parties["ECG"], currency="USD")
        matched_invoice(create_invoice(contract, parties["VRA"], parties["ECG"], "100", currency="USD"))

        result = orchestrator.compute(PERIOD, Decimal("15.5"), test_actor_id)

        assert result.batch.total_net_amount == Decimal("1550.00")
        assert result.batch.fx_rate == Decimal("15.5")

    def test_nothing_to_settle_releases_lock(self, orchestrator, test_actor_id):
        assert orchestrator.compute(PERIOD, Decimal("1"), test_actor_id).batch is None
        assert orchestrator.compute(PERIOD, Decimal("1"), test_actor_id).batch is None

    def test_second_compute_blocked(self, orchestrator, october_book, test_actor_id):
        orchestrator.compute(PERIOD, Decimal("1"), test_actor_id)
        with pytest.raises(PeriodLockedError):
            orchestrator.compute(PERIOD, Decimal("1"), test_actor_id)

    @pytest.mark.parametrize("fx_rate", [Decimal("0"), Decimal("-1"), Decimal("NaN"), Decimal("Infinity"), 1.0])
    def test_invalid_fx_rate(self, orchestrator, october_book, fx_rate, test_actor_id):
        with pytest.raises(InvalidFxRateError):
            orchestrator.compute(PERIOD, fx_rate, test_actor_id)

    def test_invalid_period(self, orchestrator, test_actor_id):
        with pytest.raises(InvalidPeriodError):
            orchestrator.compute("October", Decimal("1"), test_actor_id)

    def test_computed_event(self, orchestrator, october_book, auditor, test_actor_id):
        batch = orchestrator.compute(PERIOD, Decimal("1"), test_actor_id).batch
        trace = auditor.get_trace("SettlementBatch", batch.batch_id)
        assert trace.actions == (AuditAction.SETTLEMENT_COMPUTED,)
        assert trace.entries[0].payload["summary"]["config_checksum"] == "test"


class TestApproval:
    @pytest.fixture
    def batch(self, orchestrator, october_book, test_actor_id):
        return orchestrator.compute(PERIOD, Decimal("1"), test_actor_id).batch

    def test_quorum_flips_status_once(self, orchestrator, batch):
        first = orchestrator.approve(batch.batch_id, uuid4(), "MOE")
        second = orchestrator.approve(batch.batch_id, uuid4(), "MOF")
        third = orchestrator.approve(batch.batch_id, uuid4(), "CAGD")

        assert (first.status, first.approval_count) == (SettlementStatus.COMPUTED, 1)
        assert first.quorum.missing_roles == ("MOF", "CAGD")
        assert not second.newly_approved
        assert third.newly_approved
        assert third.status == SettlementStatus.APPROVED

    def test_approved_batch_takes_no_more_approvals(self, orchestrator, batch):
        _approve_all(orchestrator, batch.batch_id)
        with pytest.raises(ApprovalNotAllowedError):
            orchestrator.approve(batch.batch_id, uuid4(), "MOE")

    def test_unknown_role(self, orchestrator, batch):
        with pytest.raises(UnauthorizedApproverError):
            orchestrator.approve(batch.batch_id, uuid4(), "CFO")

    def test_same_role_twice(self, orchestrator, batch):
        orchestrator.approve(batch.batch_id, uuid4(), "MOE")
        with pytest.raises(DuplicateApprovalError):
            orchestrator.approve(batch.batch_id, uuid4(), "MOE")

    def test_same_approver_twice(self, orchestrator, batch):
        approver = uuid4()
        orchestrator.approve(batch.batch_id, approver, "MOE")
        with pytest.raises(DuplicateApprovalError):
            orchestrator.approve(batch.batch_id, approver, "MOF")

    def test_approved_at_recorded(self, orchestrator, batch, selector, deterministic_clock):
        _approve_all(orchestrator, batch.batch_id)
        assert selector.get_batch(batch.batch_id).approved_at == deterministic_clock.now()
        assert len(selector.get_batch_approvals(batch.batch_id)) == 3


class TestReject:
    def test_reject_frees_period(self, orchestrator, october_book, selector, test_actor_id):
        batch = orchestrator.compute(PERIOD, Decimal("1"), test_actor_id).batch

        rejected = orchestrator.reject(batch.batch_id, test_actor_id, "fx rate disputed")

        assert rejected.status == SettlementStatus.REJECTED
        assert rejected.failure_reason == "fx rate disputed"
        again = orchestrator.compute(PERIOD, Decimal("1"), test_actor_id).batch
        assert again.batch_ref == "SB-202410-0002"

    def test_approved_batch_cannot_be_rejected(self, orchestrator, approved_batch, test_actor_id):
        with pytest.raises(InvalidTransitionError):
            orchestrator.reject(approved_batch.batch_id, test_actor_id, "too late")


class TestExecute:
    def test_success(self, orchestrator, approved_batch, funded_escrow, october_book, selector, test_actor_id):
        result = orchestrator.execute(approved_batch.batch_id, test_actor_id)

        assert result.outcome == EXECUTED
        assert result.succeeded
        assert result.status == SettlementStatus.EXECUTED
        assert len(result.payments) == 2

        for invoice in october_book.values():
            stored = selector.get_invoice(invoice.invoice_id)
            assert stored.status == InvoiceStatus.PAID
            assert stored.settled_batch_id == approved_batch.batch_id

        legs = selector.get_batch_legs(approved_batch.batch_id)
        assert {leg.status for leg in legs} == {LegStatus.COMMITTED}
        payments = selector.find_batch_payments(approved_batch.batch_id)
        assert {p.status for p in payments} == {PaymentStatus.COMPLETED}
        assert payments[0].bank_reference.startswith("SB-202410-0001-L")

        balance = funded_escrow.get_balance("GHS")
        assert balance.balance == Decimal("3700")
        assert balance.reserved == Decimal("0")
        reservation = selector.get_reservation(result.reservation_reference)
        assert reservation.status == ReservationStatus.RELEASED

    def test_settled_invoices_not_recomputed(self, orchestrator, approved_batch, funded_escrow, test_actor_id):
        orchestrator.execute(approved_batch.batch_id, test_actor_id)
        assert orchestrator.compute(PERIOD, Decimal("1"), test_actor_id).batch is None

    def test_batch_audit_trail(self, orchestrator, approved_batch, funded_escrow, auditor, test_actor_id):
        orchestrator.execute(approved_batch.batch_id, test_actor_id)

        trace = auditor.get_trace("SettlementBatch", approved_batch.batch_id)
        assert trace.actions == (
            AuditAction.SETTLEMENT_COMPUTED,
            AuditAction.SETTLEMENT_APPROVAL_RECORDED,
            AuditAction.SETTLEMENT_APPROVAL_RECORDED,
            AuditAction.SETTLEMENT_APPROVAL_RECORDED,
            AuditAction.SETTLEMENT_STATUS_CHANGED,
            AuditAction.SETTLEMENT_STATUS_CHANGED,
            AuditAction.SETTLEMENT_STATUS_CHANGED,
        )
        assert auditor.validate_chain()

    def test_logs_carry_batch_ref(self, orchestrator, approved_batch, funded_escrow, captured_logs, test_actor_id):
        orchestrator.execute(approved_batch.batch_id, test_actor_id)

        executed = next(r for r in captured_logs() if r["message"] == "settlement_batch_executed")
        assert executed["batch_ref"] == approved_batch.batch_ref

    def test_insufficient_escrow(self, orchestrator, approved_batch, escrow, selector, test_actor_id):
        escrow.open_account("GHS", test_actor_id)
        escrow.fund_account("GHS", Decimal("1000"), test_actor_id)

        result = orchestrator.execute(approved_batch.batch_id, test_actor_id)

        assert result.outcome == RESERVATION_FAILED
        assert result.status == SettlementStatus.APPROVED
        assert selector.get_batch(approved_batch.batch_id).status == SettlementStatus.APPROVED
        assert selector.get_reservation(result.reservation_reference) is None

        escrow.fund_account("GHS", Decimal("300"), test_actor_id)
        assert orchestrator.execute(approved_batch.batch_id, test_actor_id).succeeded

    def test_not_approved(self, orchestrator, october_book, funded_escrow, test_actor_id):
        batch = orchestrator.compute(PERIOD, Decimal("1"), test_actor_id).batch
        with pytest.raises(SettlementNotExecutableError):
            orchestrator.execute(batch.batch_id, test_actor_id)

    def test_executed_batch_not_rerun(self, orchestrator, approved_batch, funded_escrow, test_actor_id):
        orchestrator.execute(approved_batch.batch_id, test_actor_id)
        with pytest.raises(SettlementNotExecutableError):
            orchestrator.execute(approved_batch.batch_id, test_actor_id)

    def test_tampered_legs_refused(self, session, orchestrator, approved_batch, funded_escrow, selector, test_actor_id):
        leg = session.query(SettlementLeg).filter_by(batch_id=approved_batch.batch_id, leg_seq=2).one()
        leg.amount = Decimal("100000")
        session.flush()

        with pytest.raises(SettlementSnapshotTamperedError):
            orchestrator.execute(approved_batch.batch_id, test_actor_id)

        assert selector.get_batch(approved_batch.batch_id).status == SettlementStatus.APPROVED
        assert funded_escrow.get_balance("GHS").reserved == Decimal("0")


class TestExecutionFailure:
    def test_failed_leg_rolls_back(
        self, orchestrator_factory, approved_batch, funded_escrow, october_book, selector, test_actor_id
    ):
        gateway = FailingGateway(fail_seq=2)
        result = orchestrator_factory(gateway).execute(approved_batch.batch_id, test_actor_id)

        assert result.outcome == FAILED
        assert result.status == SettlementStatus.FAILED
        assert result.message == "beneficiary account closed"
        assert [e.code for e in result.failed_legs] == ["TRANSFER_FAILED"]
        assert gateway.calls == [1, 2]

        legs = {leg.leg_seq: leg for leg in selector.get_batch_legs(approved_batch.batch_id)}
        assert legs[1].status == LegStatus.ROLLED_BACK
        assert legs[2].status == LegStatus.FAILED
        assert legs[2].failure_reason == "beneficiary account closed"

        payments = selector.find_batch_payments(approved_batch.batch_id)
        assert [p.status for p in payments] == [PaymentStatus.REVERSED]

        for invoice in october_book.values():
            assert selector.get_invoice(invoice.invoice_id).status == InvoiceStatus.MATCHED

        balance = funded_escrow.get_balance("GHS")
        assert (balance.balance, balance.reserved) == (Decimal("5000"), Decimal("0"))
        assert selector.get_batch(approved_batch.batch_id).failure_reason == "beneficiary account closed"

    def test_failed_batch_frees_period(self, orchestrator_factory, approved_batch, funded_escrow, test_actor_id):
        orchestrator = orchestrator_factory(FailingGateway(fail_seq=1))
        orchestrator.execute(approved_batch.batch_id, test_actor_id)

        again = orchestrator.compute(PERIOD, Decimal("1"), test_actor_id).batch
        assert again.batch_ref == "SB-202410-0002"

    def test_gateway_exception_is_a_leg_failure(
        self, orchestrator_factory, approved_batch, funded_escrow, selector, test_actor_id
    ):
        result = orchestrator_factory(ExplodingGateway()).execute(approved_batch.batch_id, test_actor_id)

        assert result.outcome == FAILED
        assert [e.code for e in result.failed_legs] == ["ConnectionError"]
        assert selector.find_batch_payments(approved_batch.batch_id) == []
        assert funded_escrow.get_balance("GHS").reserved == Decimal("0")

    def test_reservation_expiry_mid_run(
        self, orchestrator_factory, approved_batch, funded_escrow, selector, deterministic_clock, test_actor_id
    ):
        result = orchestrator_factory(SlowGateway(deterministic_clock)).execute(
            approved_batch.batch_id, test_actor_id
        )

        assert result.outcome == FAILED
        assert [e.code for e in result.failed_legs] == ["RESERVATION_EXPIRED"]
        legs = {leg.leg_seq: leg.status for leg in selector.get_batch_legs(approved_batch.batch_id)}
        assert legs == {1: LegStatus.ROLLED_BACK, 2: LegStatus.FAILED}
        assert [p.status for p in selector.find_batch_payments(approved_batch.batch_id)] == [
            PaymentStatus.REVERSED
        ]
        assert funded_escrow.get_balance("GHS").reserved == Decimal("0")


class TestExpiredExecutionSweep:
    @pytest.fixture
    def stuck_batch(self, orchestrator, store, approved_batch, funded_escrow, test_actor_id):
        """An EXECUTING batch whose worker died before any leg ran."""
        reference = orchestrator.reservation_reference(approved_batch)
        funded_escrow.reserve(
            approved_batch.total_net_amount, "GHS", reference, timedelta(hours=24), test_actor_id
        )
        store.update_settlement_batch_status(
            approved_batch.batch_id,
            SettlementStatus.EXECUTING,
            test_actor_id,
            reservation_reference=reference,
        )
        return approved_batch

    def test_live_reservation_left_alone(self, orchestrator, stuck_batch, test_actor_id):
        assert orchestrator.fail_expired_executions(test_actor_id) == []

    def test_expired_batch_failed(
        self, orchestrator, stuck_batch, funded_escrow, selector, deterministic_clock, test_actor_id
    ):
        deterministic_clock.advance(hours=25)

        results = orchestrator.fail_expired_executions(test_actor_id)

        assert [r.batch_id for r in results] == [stuck_batch.batch_id]
        assert results[0].status == SettlementStatus.FAILED
        assert {leg.status for leg in selector.get_batch_legs(stuck_batch.batch_id)} == {LegStatus.FAILED}
        assert funded_escrow.get_balance("GHS").reserved == Decimal("0")

    def test_already_expired_reservation(
        self, orchestrator, stuck_batch, funded_escrow, selector, deterministic_clock, test_actor_id
    ):
        deterministic_clock.advance(hours=25)
        funded_escrow.expire_reservations(test_actor_id)

        results = orchestrator.fail_expired_executions(test_actor_id)

        assert results[0].status == SettlementStatus.FAILED
        reservation = selector.get_reservation(orchestrator.reservation_reference(stuck_batch))
        assert reservation.status == ReservationStatus.EXPIRED
