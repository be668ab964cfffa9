"""
Tests for LedgerStore.

Covers:
- Invoice status transitions, no-op updates and optimistic locking
- Period locks
- Batch persistence and the legs snapshot hash
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from clearing_kernel.domain.values import InvoiceStatus, LegStatus, SettlementStatus
from clearing_kernel.exceptions import (
    InvalidTransitionError,
    OptimisticLockError,
    PeriodLockedError,
    SettlementBatchNotFoundError,
    ValidationError,
)
from clearing_kernel.models.audit_event import AuditAction
from clearing_kernel.models.settlement import SettlementLeg
from clearing_kernel.services.ledger_store import BatchSpec, LegSpec

COMPUTED_AT = datetime(2024, 11, 1, 9, tzinfo=timezone.utc)


@pytest.fixture
def invoice(parties, create_contract, create_invoice):
    contract = create_contract(parties["VRA"], parties["ECG"])
    return create_invoice(contract, parties["VRA"], parties["ECG"], "1000", energy="100")


def _spec(parties, invoice, period="2024-10"):
    return BatchSpec(
        period=period,
        fx_rate=Decimal("1"),
        currency="GHS",
        total_net_amount=Decimal("1000"),
        total_gross_amount=Decimal("1000"),
        legs=(LegSpec(parties["ECG"].party_id, parties["VRA"].party_id, Decimal("1000")),),
        invoice_amounts=((invoice.invoice_id, Decimal("1000")),),
        computed_at=COMPUTED_AT,
    )


class TestInvoiceStatus:
    def test_match_persists_annotations(self, store, selector, invoice, auditor, test_actor_id):
        delivery_id = uuid4()
        changed = store.update_invoice_status(
            invoice.invoice_id,
            InvoiceStatus.MATCHED,
            test_actor_id,
            confidence_score=Decimal("97.50"),
            matched_delivery_ids=[delivery_id],
            expected_version=1,
        )

        stored = selector.get_invoice(invoice.invoice_id)
        assert changed
        assert stored.status == InvoiceStatus.MATCHED
        assert stored.confidence_score == Decimal("97.50")
        assert stored.matched_delivery_ids == (delivery_id,)
        assert stored.version == 2
        assert auditor.get_trace("Invoice", invoice.invoice_id).last_action == AuditAction.INVOICE_STATUS_CHANGED

    def test_match_requires_score_and_deliveries(self, store, invoice, test_actor_id):
        with pytest.raises(ValidationError):
            store.update_invoice_status(invoice.invoice_id, InvoiceStatus.MATCHED, test_actor_id)

    def test_same_status_is_noop(self, store, invoice, auditor, test_actor_id):
        assert store.update_invoice_status(invoice.invoice_id, InvoiceStatus.PENDING, test_actor_id) is False
        assert len(auditor.get_trace("Invoice", invoice.invoice_id).entries) == 1

    def test_illegal_transition(self, store, invoice, test_actor_id):
        with pytest.raises(InvalidTransitionError):
            store.update_invoice_status(invoice.invoice_id, InvoiceStatus.PAID, test_actor_id)

    def test_stale_version_rejected(self, store, invoice, test_actor_id):
        store.update_invoice_status(invoice.invoice_id, InvoiceStatus.PARTIALLY_MATCHED, test_actor_id)
        with pytest.raises(OptimisticLockError):
            store.update_invoice_status(
                invoice.invoice_id, InvoiceStatus.DISPUTED, test_actor_id, expected_version=1
            )


class TestPeriodLock:
    def test_second_lock_rejected(self, store, test_actor_id):
        store.acquire_period_lock("2024-10")
        with pytest.raises(PeriodLockedError):
            store.acquire_period_lock("2024-10")

    def test_lock_names_holding_batch(self, store, parties, invoice, test_actor_id):
        store.acquire_period_lock("2024-10")
        batch = store.create_settlement_batch(_spec(parties, invoice), test_actor_id)

        with pytest.raises(PeriodLockedError) as exc_info:
            store.acquire_period_lock("2024-10")
        assert exc_info.value.holder_batch_ref == batch.batch_ref

    def test_release_allows_relock(self, store):
        store.acquire_period_lock("2024-10")
        store.release_period_lock("2024-10")
        store.acquire_period_lock("2024-10")

    def test_other_periods_independent(self, store):
        store.acquire_period_lock("2024-10")
        store.acquire_period_lock("2024-11")


class TestSettlementBatch:
    def test_create(self, store, selector, parties, invoice, test_actor_id):
        store.acquire_period_lock("2024-10")
        batch = store.create_settlement_batch(_spec(parties, invoice), test_actor_id)

        assert batch.batch_ref == "SB-202410-0001"
        assert batch.status == SettlementStatus.COMPUTED
        assert len(batch.legs_hash) == 64
        legs = selector.get_batch_legs(batch.batch_id)
        assert [(leg.leg_seq, leg.status) for leg in legs] == [(1, LegStatus.PENDING)]
        assert selector.get_batch_invoice_ids(batch.batch_id) == [invoice.invoice_id]
        assert store.invoice_amounts_for_batch(batch.batch_id) == {invoice.invoice_id: Decimal("1000")}

    def test_refs_sequence_per_period(self, store, parties, invoice, test_actor_id):
        first = store.create_settlement_batch(_spec(parties, invoice), test_actor_id)
        store.update_settlement_batch_status(first.batch_id, SettlementStatus.REJECTED, test_actor_id)
        second = store.create_settlement_batch(_spec(parties, invoice), test_actor_id)
        other = store.create_settlement_batch(_spec(parties, invoice, period="2024-11"), test_actor_id)

        assert second.batch_ref == "SB-202410-0002"
        assert other.batch_ref == "SB-202411-0001"

    def test_legs_hash_detects_edit(self, session, store, parties, invoice, test_actor_id):
        batch = store.create_settlement_batch(_spec(parties, invoice), test_actor_id)
        assert store.current_legs_hash(batch.batch_id) == batch.legs_hash

        leg = session.query(SettlementLeg).filter_by(batch_id=batch.batch_id).one()
        leg.amount = Decimal("1")
        session.flush()

        assert store.current_legs_hash(batch.batch_id) != batch.legs_hash

    def test_leg_status_change_keeps_hash(self, store, selector, parties, invoice, test_actor_id):
        batch = store.create_settlement_batch(_spec(parties, invoice), test_actor_id)
        leg = selector.get_batch_legs(batch.batch_id)[0]

        store.update_leg_status(leg.leg_id, LegStatus.COMMITTED, test_actor_id)

        assert store.current_legs_hash(batch.batch_id) == batch.legs_hash

    def test_leg_transition_enforced(self, store, selector, parties, invoice, test_actor_id):
        batch = store.create_settlement_batch(_spec(parties, invoice), test_actor_id)
        leg = selector.get_batch_legs(batch.batch_id)[0]
        store.update_leg_status(leg.leg_id, LegStatus.FAILED, test_actor_id, failure_reason="bank down")

        with pytest.raises(InvalidTransitionError):
            store.update_leg_status(leg.leg_id, LegStatus.COMMITTED, test_actor_id)

    def test_batch_transition_enforced(self, store, parties, invoice, test_actor_id):
        batch = store.create_settlement_batch(_spec(parties, invoice), test_actor_id)
        with pytest.raises(InvalidTransitionError):
            store.update_settlement_batch_status(batch.batch_id, SettlementStatus.EXECUTING, test_actor_id)

    def test_lock_unknown_batch(self, store):
        with pytest.raises(SettlementBatchNotFoundError):
            store.lock_batch(uuid4())
