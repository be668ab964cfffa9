"""
Dispute -- a formal challenge to an invoice.

Disputes are never deleted.  Closing one is a status change.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from clearing_kernel.db.base import TrackedBase, UUIDString
from clearing_kernel.domain.dtos import DisputeRecord
from clearing_kernel.domain.values import DisputeReason, DisputeStatus


class Dispute(TrackedBase):
    """Dispute raised by one party against another over an invoice."""

    __tablename__ = "disputes"

    __table_args__ = (
        Index("idx_dispute_ref", "dispute_ref", unique=True),
        Index("idx_dispute_invoice_status", "invoice_id", "status"),
    )

    dispute_ref: Mapped[str] = mapped_column(String(30), nullable=False)
    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("invoices.id"), nullable=False
    )
    contract_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("contracts.id"), nullable=False
    )
    raised_by_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("parties.id"), nullable=False
    )
    received_by_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("parties.id"), nullable=False
    )
    reason_code: Mapped[DisputeReason] = mapped_column(String(30), nullable=False)
    status: Mapped[DisputeStatus] = mapped_column(
        String(20), nullable=False, default=DisputeStatus.OPEN
    )
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    sla_deadline: Mapped[datetime] = mapped_column(nullable=False)
    amount_in_dispute: Mapped[Decimal | None] = mapped_column(nullable=True)
    ruling_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<Dispute {self.dispute_ref} {self.reason_code} {self.status}>"

    def to_dto(self) -> DisputeRecord:
        return DisputeRecord(
            dispute_id=self.id,
            dispute_ref=self.dispute_ref,
            invoice_id=self.invoice_id,
            contract_id=self.contract_id,
            raised_by_id=self.raised_by_id,
            received_by_id=self.received_by_id,
            reason_code=DisputeReason(self.reason_code),
            status=DisputeStatus(self.status),
            description=self.description,
            sla_deadline=self.sla_deadline,
            amount_in_dispute=self.amount_in_dispute,
            ruling_amount=self.ruling_amount,
            resolved_at=self.resolved_at,
        )
