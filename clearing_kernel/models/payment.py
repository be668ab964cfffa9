"""
Payment -- a cash movement between two parties.

Bilateral payments reference an invoice; settlement payments reference a
batch and leg instead.  Only COMPLETED payments reduce outstanding balances.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, Date, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from clearing_kernel.db.base import TrackedBase, UUIDString
from clearing_kernel.domain.dtos import PaymentRecord
from clearing_kernel.domain.values import PaymentStatus


class Payment(TrackedBase):
    """Payment instruction and its execution status."""

    __tablename__ = "payments"

    __table_args__ = (
        Index("idx_payment_ref", "payment_ref", unique=True),
        Index("idx_payment_invoice", "invoice_id"),
        Index("idx_payment_batch", "settlement_batch_id"),
        CheckConstraint("amount > 0", name="ck_payment_amount_positive"),
    )

    payment_ref: Mapped[str] = mapped_column(String(50), nullable=False)
    invoice_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("invoices.id"), nullable=True
    )
    payer_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("parties.id"), nullable=False
    )
    payee_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("parties.id"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    value_date: Mapped[date] = mapped_column(Date, nullable=False)
    bank_reference: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    status: Mapped[PaymentStatus] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING
    )
    settlement_batch_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    settlement_leg_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def __repr__(self) -> str:
        return f"<Payment {self.payment_ref} {self.amount} {self.status}>"

    def to_dto(self) -> PaymentRecord:
        return PaymentRecord(
            payment_id=self.id,
            payment_ref=self.payment_ref,
            invoice_id=self.invoice_id,
            payer_id=self.payer_id,
            payee_id=self.payee_id,
            amount=self.amount,
            currency=self.currency,
            value_date=self.value_date,
            status=PaymentStatus(self.status),
            bank_reference=self.bank_reference,
            settlement_batch_id=self.settlement_batch_id,
            settlement_leg_id=self.settlement_leg_id,
        )
