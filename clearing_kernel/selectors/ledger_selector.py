"""
Module: clearing_kernel.selectors.ledger_selector
Responsibility: Read side of the Ledger Store.  Period, range and status
    queries over invoices, deliveries, payments, disputes and settlement
    batches, returning frozen DTOs.
Architecture position: Kernel > Selectors.  Imports models and domain DTOs.
    MUST NOT import services or outer layers.

Invariants enforced:
    - Read-only: never adds, flushes, deletes or commits.
    - Deterministic ordering on every list query, so engines receive
      identical input order for identical data.

Audit relevance:
    Reconciliation and netting only see what these queries return; the
    selection rules here (period containment, COMPLETED payments only) are
    part of the audit story for every batch.
"""

from collections.abc import Iterable
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from clearing_kernel.domain.dtos import (
    ContractInfo,
    DeliveryRecord,
    DisputeRecord,
    InvoiceRecord,
    PartyInfo,
    PaymentRecord,
    ReservationRecord,
    SettlementApprovalRecord,
    SettlementBatchRecord,
    SettlementLegRecord,
)
from clearing_kernel.domain.lifecycle import LOCK_HOLDING_STATUSES, OPEN_DISPUTE_STATUSES
from clearing_kernel.domain.values import InvoiceStatus, PaymentStatus, SettlementStatus
from clearing_kernel.models.contract import Contract
from clearing_kernel.models.delivery import Delivery
from clearing_kernel.models.dispute import Dispute
from clearing_kernel.models.escrow import EscrowReservation
from clearing_kernel.models.invoice import Invoice
from clearing_kernel.models.party import Party
from clearing_kernel.models.payment import Payment
from clearing_kernel.models.settlement import (
    SettlementApproval,
    SettlementBatch,
    SettlementBatchInvoice,
    SettlementLeg,
)


class LedgerSelector:
    """
    Read-only queries for reconciliation and settlement.

    Contract:
        Accepts a Session from the caller; returns DTOs, never ORM rows.
    """

    def __init__(self, session: Session):
        self.session = session

    # Invoices

    def get_invoice(self, invoice_id: UUID) -> InvoiceRecord | None:
        invoice = self.session.get(Invoice, invoice_id)
        return invoice.to_dto() if invoice else None

    def find_invoices_in_period(
        self,
        start: date,
        end: date,
        statuses: Iterable[InvoiceStatus],
        *,
        unsettled_only: bool = False,
    ) -> list[InvoiceRecord]:
        """
        Invoices whose billing period lies inside ``[start, end]``.

        Containment, not overlap: ``period_start >= start`` and
        ``period_end <= end``.
        """
        query = (
            select(Invoice)
            .where(
                Invoice.period_start >= start,
                Invoice.period_end <= end,
                Invoice.status.in_([s.value for s in statuses]),
            )
            .order_by(Invoice.period_start, Invoice.invoice_ref)
        )
        if unsettled_only:
            query = query.where(Invoice.settled_batch_id.is_(None))
        return [row.to_dto() for row in self.session.execute(query).scalars()]

    def find_outstanding_invoices(self, issued_on_or_before: date | None = None) -> list[InvoiceRecord]:
        """Invoices not yet PAID, optionally limited by issue date."""
        query = (
            select(Invoice)
            .where(Invoice.status != InvoiceStatus.PAID.value)
            .order_by(Invoice.issue_date, Invoice.invoice_ref)
        )
        if issued_on_or_before is not None:
            query = query.where(Invoice.issue_date <= issued_on_or_before)
        return [row.to_dto() for row in self.session.execute(query).scalars()]

    # Deliveries

    def find_deliveries_in_range(
        self,
        start: datetime,
        end: datetime,
        contract_ids: Iterable[UUID] | None = None,
    ) -> list[DeliveryRecord]:
        """Deliveries with ``start <= timestamp <= end``, oldest first."""
        query = (
            select(Delivery)
            .where(Delivery.timestamp >= start, Delivery.timestamp <= end)
            .order_by(Delivery.timestamp, Delivery.delivery_ref)
        )
        if contract_ids is not None:
            query = query.where(Delivery.contract_id.in_(list(contract_ids)))
        return [row.to_dto() for row in self.session.execute(query).scalars()]

    # Payments

    def get_payment(self, payment_id: UUID) -> PaymentRecord | None:
        payment = self.session.get(Payment, payment_id)
        return payment.to_dto() if payment else None

    def find_completed_payments(
        self,
        invoice_ids: Iterable[UUID] | None = None,
    ) -> list[PaymentRecord]:
        """COMPLETED payments, optionally restricted to some invoices."""
        query = (
            select(Payment)
            .where(Payment.status == PaymentStatus.COMPLETED.value)
            .order_by(Payment.value_date, Payment.payment_ref)
        )
        if invoice_ids is not None:
            query = query.where(Payment.invoice_id.in_(list(invoice_ids)))
        return [row.to_dto() for row in self.session.execute(query).scalars()]

    def completed_amount_for_invoice(self, invoice_id: UUID) -> Decimal:
        total = self.session.execute(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                Payment.invoice_id == invoice_id,
                Payment.status == PaymentStatus.COMPLETED.value,
            )
        ).scalar_one()
        return Decimal(str(total))

    def find_batch_payments(self, batch_id: UUID) -> list[PaymentRecord]:
        query = (
            select(Payment)
            .where(Payment.settlement_batch_id == batch_id)
            .order_by(Payment.payment_ref)
        )
        return [row.to_dto() for row in self.session.execute(query).scalars()]

    # Master data

    def get_contract(self, contract_id: UUID) -> ContractInfo | None:
        contract = self.session.get(Contract, contract_id)
        return contract.to_dto() if contract else None

    def get_contracts(self, contract_ids: Iterable[UUID]) -> dict[UUID, ContractInfo]:
        ids = list(set(contract_ids))
        if not ids:
            return {}
        rows = self.session.execute(select(Contract).where(Contract.id.in_(ids))).scalars()
        return {row.id: row.to_dto() for row in rows}

    def get_parties(self, party_ids: Iterable[UUID]) -> dict[UUID, PartyInfo]:
        ids = list(set(party_ids))
        if not ids:
            return {}
        rows = self.session.execute(select(Party).where(Party.id.in_(ids))).scalars()
        return {row.id: row.to_dto() for row in rows}

    # Disputes

    def get_dispute(self, dispute_id: UUID) -> DisputeRecord | None:
        dispute = self.session.get(Dispute, dispute_id)
        return dispute.to_dto() if dispute else None

    def find_open_disputes(self, invoice_id: UUID) -> list[DisputeRecord]:
        query = (
            select(Dispute)
            .where(
                Dispute.invoice_id == invoice_id,
                Dispute.status.in_([s.value for s in OPEN_DISPUTE_STATUSES]),
            )
            .order_by(Dispute.dispute_ref)
        )
        return [row.to_dto() for row in self.session.execute(query).scalars()]

    def find_disputed_invoice_ids(self, invoice_ids: Iterable[UUID]) -> frozenset[UUID]:
        ids = list(invoice_ids)
        if not ids:
            return frozenset()
        rows = self.session.execute(
            select(Dispute.invoice_id).where(
                Dispute.invoice_id.in_(ids),
                Dispute.status.in_([s.value for s in OPEN_DISPUTE_STATUSES]),
            )
        ).scalars()
        return frozenset(rows)

    def find_sla_breaches(self, as_of: datetime) -> list[DisputeRecord]:
        query = (
            select(Dispute)
            .where(
                Dispute.status.in_([s.value for s in OPEN_DISPUTE_STATUSES]),
                Dispute.sla_deadline < as_of,
            )
            .order_by(Dispute.sla_deadline, Dispute.dispute_ref)
        )
        return [row.to_dto() for row in self.session.execute(query).scalars()]

    # Settlement

    def get_batch(self, batch_id: UUID) -> SettlementBatchRecord | None:
        batch = self.session.get(SettlementBatch, batch_id)
        return batch.to_dto() if batch else None

    def get_batch_legs(self, batch_id: UUID) -> list[SettlementLegRecord]:
        query = (
            select(SettlementLeg)
            .where(SettlementLeg.batch_id == batch_id)
            .order_by(SettlementLeg.leg_seq)
        )
        return [row.to_dto() for row in self.session.execute(query).scalars()]

    def get_batch_approvals(self, batch_id: UUID) -> list[SettlementApprovalRecord]:
        query = (
            select(SettlementApproval)
            .where(SettlementApproval.batch_id == batch_id)
            .order_by(SettlementApproval.approved_at, SettlementApproval.role)
        )
        return [row.to_dto() for row in self.session.execute(query).scalars()]

    def get_batch_invoice_ids(self, batch_id: UUID) -> list[UUID]:
        query = (
            select(SettlementBatchInvoice.invoice_id)
            .where(SettlementBatchInvoice.batch_id == batch_id)
            .order_by(SettlementBatchInvoice.invoice_id)
        )
        return list(self.session.execute(query).scalars())

    def find_active_batch_for_period(self, period: str) -> SettlementBatchRecord | None:
        batch = self.session.execute(
            select(SettlementBatch).where(
                SettlementBatch.period == period,
                SettlementBatch.status.in_([s.value for s in LOCK_HOLDING_STATUSES]),
            )
        ).scalar_one_or_none()
        return batch.to_dto() if batch else None

    def find_batches(self, status: SettlementStatus) -> list[SettlementBatchRecord]:
        query = (
            select(SettlementBatch)
            .where(SettlementBatch.status == status.value)
            .order_by(SettlementBatch.computed_at, SettlementBatch.batch_ref)
        )
        return [row.to_dto() for row in self.session.execute(query).scalars()]

    # Escrow

    def get_reservation(self, reference: str) -> ReservationRecord | None:
        reservation = self.session.execute(
            select(EscrowReservation).where(EscrowReservation.reference == reference)
        ).scalar_one_or_none()
        return reservation.to_dto() if reservation else None
