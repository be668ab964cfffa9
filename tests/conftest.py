"""
Pytest fixtures for the clearing kernel test suite.

Provides:
- Database sessions with per-test rollback isolation
- Deterministic clock, auditor and kernel service fixtures
- Factories for parties, contracts, deliveries and invoices (persisted)
- Builders for engine input records (in memory, no database)
- Captured structured logs

Environment Variables:
- DATABASE_URL: connection URL for the test database.  Defaults to an
  in-memory SQLite database; set a PostgreSQL URL to exercise row locks
  and the production isolation level.
"""

import json
import logging
import os
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO
from typing import Generator
from uuid import UUID, uuid4

import pytest
from sqlalchemy.orm import Session

from clearing_config import ClearingConfig
from clearing_kernel.db.engine import (
    create_tables,
    drop_tables,
    init_engine_from_url,
    reset_engine,
)
from clearing_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from clearing_kernel.domain.clock import DeterministicClock
from clearing_kernel.domain.commodity import CommodityQuantity
from clearing_kernel.domain.dtos import (
    DeliveryRecord,
    InvoiceRecord,
    PaymentRecord,
    SettlementApprovalRecord,
)
from clearing_kernel.domain.values import InvoiceStatus, PartyRole, PaymentStatus
from clearing_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from clearing_kernel.selectors.ledger_selector import LedgerSelector
from clearing_kernel.services.auditor_service import AuditorService
from clearing_kernel.services.escrow_service import EscrowService
from clearing_kernel.services.ingestor_service import IngestorService
from clearing_kernel.services.ledger_store import LedgerStore

DEFAULT_DATABASE_URL = "sqlite+pysqlite:///:memory:"

# Test actor ID for all test operations
TEST_ACTOR_ID = uuid4()

TEST_NOW = datetime(2024, 11, 1, 9, 0, 0, tzinfo=timezone.utc)


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)


def pytest_configure(config):
    config.addinivalue_line("markers", "postgres: mark test as requiring PostgreSQL")


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture clearing_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, orchestrator):
            orchestrator.compute("2024-10", Decimal("1"), actor_id)
            logs = captured_logs()
            assert any(r["message"] == "settlement_batch_created" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("clearing_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Session-scoped DB infrastructure (create engine + tables ONCE per suite)
# =============================================================================


@pytest.fixture(scope="session")
def db_engine():
    eng = init_engine_from_url(get_database_url(), echo=False)
    yield eng
    reset_engine()


@pytest.fixture(scope="session")
def db_tables(db_engine):
    """Create all tables once per session; immutability listeners stay active."""
    drop_tables()
    create_tables()
    register_immutability_listeners()
    yield
    unregister_immutability_listeners()
    drop_tables()


@pytest.fixture(scope="function")
def session(db_tables, db_engine) -> Generator[Session, None, None]:
    """Provide a database session for testing.

    The session joins an outer transaction on a dedicated connection; any
    ``session.commit()`` inside the test only releases a savepoint, and the
    outer transaction is rolled back at teardown.
    """
    conn = db_engine.connect()
    trans = conn.begin()
    sess = Session(bind=conn, join_transaction_mode="create_savepoint", expire_on_commit=False)
    yield sess
    try:
        sess.close()
    finally:
        try:
            trans.rollback()
        finally:
            conn.close()


# =============================================================================
# Kernel fixtures
# =============================================================================


@pytest.fixture
def test_actor_id() -> UUID:
    return TEST_ACTOR_ID


@pytest.fixture
def deterministic_clock() -> DeterministicClock:
    return DeterministicClock(TEST_NOW)


@pytest.fixture
def clearing_config() -> ClearingConfig:
    """Built-in defaults, independent of any YAML on disk."""
    return ClearingConfig(config_id="test", version=1, checksum="test")


@pytest.fixture
def auditor(session, deterministic_clock) -> AuditorService:
    return AuditorService(session, deterministic_clock)


@pytest.fixture
def selector(session) -> LedgerSelector:
    return LedgerSelector(session)


@pytest.fixture
def store(session, auditor, deterministic_clock) -> LedgerStore:
    return LedgerStore(session, auditor, deterministic_clock)


@pytest.fixture
def ingestor(session, auditor) -> IngestorService:
    return IngestorService(session, auditor)


@pytest.fixture
def escrow(session, auditor, deterministic_clock) -> EscrowService:
    return EscrowService(session, auditor, deterministic_clock)


# =============================================================================
# Persisted reference data
# =============================================================================


@pytest.fixture
def parties(ingestor, test_actor_id):
    """ECG (distributor), VRA (generator) and GRIDCo (transmission)."""
    return {
        "ECG": ingestor.register_party("ECG", "Electricity Company of Ghana", PartyRole.DISTRIBUTOR, test_actor_id),
        "VRA": ingestor.register_party("VRA", "Volta River Authority", PartyRole.GENERATOR, test_actor_id),
        "GRIDCO": ingestor.register_party("GRIDCO", "Ghana Grid Company", PartyRole.TRANSMISSION, test_actor_id),
    }


@pytest.fixture
def create_contract(ingestor, test_actor_id):
    counter = iter(range(1, 10_000))

    def _create(party_a, party_b, contract_type="PPA", currency="GHS"):
        return ingestor.register_contract(
            contract_ref=f"CTR-{next(counter):04d}",
            party_a_id=party_a.party_id,
            party_b_id=party_b.party_id,
            contract_type=contract_type,
            currency=currency,
            start_date=date(2024, 1, 1),
            actor_id=test_actor_id,
        )

    return _create


@pytest.fixture
def create_delivery(ingestor, test_actor_id):
    counter = iter(range(1, 10_000))

    def _create(contract, quantity, timestamp=datetime(2024, 10, 15, 12, tzinfo=timezone.utc)):
        quantity = Decimal(str(quantity))
        return ingestor.record_delivery(
            delivery_ref=f"DLV-{next(counter):05d}",
            contract_id=contract.contract_id,
            timestamp=timestamp,
            meter_read_start=Decimal("0"),
            meter_read_end=quantity,
            quantity=quantity,
            source_system="SCADA",
            actor_id=test_actor_id,
        )

    return _create


@pytest.fixture
def create_invoice(ingestor, test_actor_id):
    """Issue a PENDING invoice for October 2024 from ``issuer`` to ``counterparty``."""
    counter = iter(range(1, 10_000))

    def _create(
        contract,
        issuer,
        counterparty,
        amount,
        energy=None,
        period_start=date(2024, 10, 1),
        period_end=date(2024, 10, 31),
        currency="GHS",
        due_date=None,
    ):
        line_items = {"energy": str(energy), "energy_unit": "MWh"} if energy is not None else {}
        return ingestor.issue_invoice(
            invoice_ref=f"INV-{next(counter):05d}",
            contract_id=contract.contract_id,
            issuer_id=issuer.party_id,
            counterparty_id=counterparty.party_id,
            period_start=period_start,
            period_end=period_end,
            issue_date=period_end,
            currency=currency,
            total_amount=Decimal(str(amount)),
            line_items=line_items,
            actor_id=test_actor_id,
            due_date=due_date,
        )

    return _create


@pytest.fixture
def matched_invoice(store, test_actor_id):
    """Move an issued invoice straight to MATCHED with a nominal score."""

    def _match(invoice, delivery_ids=None):
        store.update_invoice_status(
            invoice.invoice_id,
            InvoiceStatus.MATCHED,
            test_actor_id,
            confidence_score=Decimal("100"),
            matched_delivery_ids=delivery_ids or [uuid4()],
        )
        return invoice

    return _match


# =============================================================================
# In-memory engine inputs
# =============================================================================


@pytest.fixture
def invoice_record():
    """Build an ``InvoiceRecord`` without touching the database."""
    counter = iter(range(1, 10_000))

    def _build(
        issuer_id=None,
        counterparty_id=None,
        amount="1000",
        energy="100",
        contract_id=None,
        currency="GHS",
        status=InvoiceStatus.PENDING,
        period_start=date(2024, 10, 1),
        period_end=date(2024, 10, 31),
        due_date=None,
        line_items=None,
    ):
        items = line_items if line_items is not None else ({"energy": energy} if energy is not None else {})
        return InvoiceRecord(
            invoice_id=uuid4(),
            invoice_ref=f"INV-{next(counter):05d}",
            contract_id=contract_id or uuid4(),
            issuer_id=issuer_id or uuid4(),
            counterparty_id=counterparty_id or uuid4(),
            period_start=period_start,
            period_end=period_end,
            issue_date=period_end,
            due_date=due_date,
            currency=currency,
            total_amount=Decimal(str(amount)),
            tax_amount=Decimal("0"),
            quantities=CommodityQuantity.from_line_items(items),
            status=status,
            line_items=items if isinstance(items, dict) else {},
        )

    return _build


@pytest.fixture
def delivery_record():
    counter = iter(range(1, 10_000))

    def _build(contract_id, quantity, timestamp=datetime(2024, 10, 15, 12, tzinfo=timezone.utc)):
        quantity = Decimal(str(quantity))
        return DeliveryRecord(
            delivery_id=uuid4(),
            delivery_ref=f"DLV-{next(counter):05d}",
            contract_id=contract_id,
            timestamp=timestamp,
            quantity=quantity,
            meter_read_start=Decimal("0"),
            meter_read_end=quantity,
            quality_score=Decimal("100"),
            source_system="SCADA",
        )

    return _build


@pytest.fixture
def payment_record():
    counter = iter(range(1, 10_000))

    def _build(invoice, amount, status=PaymentStatus.COMPLETED):
        return PaymentRecord(
            payment_id=uuid4(),
            payment_ref=f"PAY-{next(counter):05d}",
            invoice_id=invoice.invoice_id,
            payer_id=invoice.counterparty_id,
            payee_id=invoice.issuer_id,
            amount=Decimal(str(amount)),
            currency=invoice.currency,
            value_date=date(2024, 10, 20),
            status=status,
        )

    return _build


@pytest.fixture
def approval_record():
    def _build(role, approver_id=None):
        return SettlementApprovalRecord(
            approver_id=approver_id or uuid4(),
            role=role,
            approved_at=TEST_NOW,
        )

    return _build
