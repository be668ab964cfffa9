"""
Invoice -- a bill issued by one party to another for a contract period.

Financial fields (amounts, parties, period, line items) are fixed at
issue time and covered by ``content_hash``.  Reconciliation and settlement
only ever move ``status`` and the match annotations, always through the
ledger store, which enforces the invoice state machine.

Concurrent writers are detected with an optimistic version counter: a flush
against a stale version raises ``StaleDataError`` which the ledger store
reports as ``OptimisticLockError``.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, CheckConstraint, Date, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from clearing_kernel.db.base import TrackedBase, UUIDString
from clearing_kernel.domain.commodity import CommodityQuantity
from clearing_kernel.domain.dtos import InvoiceRecord
from clearing_kernel.domain.values import InvoiceStatus


class Invoice(TrackedBase):
    """
    Invoice header with declared commodity quantities.

    Guarantees:
        - ``total_amount > 0`` and ``tax_amount >= 0``.
        - ``period_start <= period_end``.
        - MATCHED invoices carry ``confidence_score`` and
          ``matched_delivery_ids`` (enforced by the ledger store).
    """

    __tablename__ = "invoices"

    __table_args__ = (
        Index("idx_invoice_ref", "invoice_ref", unique=True),
        Index("idx_invoice_period", "period_start", "period_end"),
        Index("idx_invoice_status", "status"),
        CheckConstraint("total_amount > 0", name="ck_invoice_total_positive"),
        CheckConstraint("tax_amount >= 0", name="ck_invoice_tax_non_negative"),
        CheckConstraint("period_start <= period_end", name="ck_invoice_period_order"),
    )

    invoice_ref: Mapped[str] = mapped_column(String(50), nullable=False)
    contract_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("contracts.id"), nullable=False
    )
    issuer_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("parties.id"), nullable=False
    )
    counterparty_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("parties.id"), nullable=False
    )
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    line_items: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    status: Mapped[InvoiceStatus] = mapped_column(
        String(20),
        nullable=False,
        default=InvoiceStatus.PENDING,
    )
    confidence_score: Mapped[Decimal | None] = mapped_column(nullable=True)
    matched_delivery_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    settled_batch_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Invoice {self.invoice_ref} {self.status}>"

    def to_dto(self) -> InvoiceRecord:
        return InvoiceRecord(
            invoice_id=self.id,
            invoice_ref=self.invoice_ref,
            contract_id=self.contract_id,
            issuer_id=self.issuer_id,
            counterparty_id=self.counterparty_id,
            period_start=self.period_start,
            period_end=self.period_end,
            issue_date=self.issue_date,
            due_date=self.due_date,
            currency=self.currency,
            total_amount=self.total_amount,
            tax_amount=self.tax_amount,
            quantities=CommodityQuantity.from_line_items(self.line_items),
            status=InvoiceStatus(self.status),
            line_items=dict(self.line_items or {}),
            confidence_score=self.confidence_score,
            matched_delivery_ids=tuple(UUID(d) for d in self.matched_delivery_ids or ()),
            content_hash=self.content_hash,
            settled_batch_id=self.settled_batch_id,
            version=self.version,
        )
