"""
Settlement models -- multilateral netting batches and their children.

A ``SettlementBatch`` owns its legs, its approvals and a snapshot of the
invoices (with the outstanding amounts) the netting was computed from.
Legs are persisted once at compute time; ``legs_hash`` is a digest of
(seq, payer, payee, amount) for every leg and is re-verified immediately
before execution.

``SettlementPeriodLock`` is the mutual-exclusion row for a period: at most
one live (COMPUTED, APPROVED or EXECUTING) batch per period.  The unique
constraint on ``period`` makes a racing second compute fail at flush.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clearing_kernel.db.base import Base, TrackedBase, UUIDString
from clearing_kernel.domain.dtos import (
    SettlementApprovalRecord,
    SettlementBatchRecord,
    SettlementLegRecord,
)
from clearing_kernel.domain.values import LegStatus, SettlementStatus


class SettlementBatch(TrackedBase):
    """
    Netting batch for one settlement period.

    Guarantees:
        - ``batch_ref`` is unique (``SB-YYYYMM-NNNN``).
        - Status only moves along the settlement state machine.
    """

    __tablename__ = "settlement_batches"

    __table_args__ = (
        Index("idx_batch_ref", "batch_ref", unique=True),
        Index("idx_batch_period_status", "period", "status"),
    )

    batch_ref: Mapped[str] = mapped_column(String(30), nullable=False)
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    fx_rate: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[SettlementStatus] = mapped_column(
        String(20), nullable=False, default=SettlementStatus.COMPUTED
    )
    total_net_amount: Mapped[Decimal] = mapped_column(nullable=False)
    total_gross_amount: Mapped[Decimal] = mapped_column(nullable=False)
    legs_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    risk_recommendation: Mapped[str] = mapped_column(String(60), nullable=False, default="")
    risk_factors: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    reservation_reference: Mapped[str | None] = mapped_column(String(80), nullable=True)
    computed_at: Mapped[datetime] = mapped_column(nullable=False)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    executed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    legs: Mapped[list["SettlementLeg"]] = relationship(
        back_populates="batch",
        order_by="SettlementLeg.leg_seq",
        lazy="selectin",
    )
    approvals: Mapped[list["SettlementApproval"]] = relationship(
        back_populates="batch",
        order_by="SettlementApproval.approved_at",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<SettlementBatch {self.batch_ref} {self.status}>"

    def to_dto(self) -> SettlementBatchRecord:
        return SettlementBatchRecord(
            batch_id=self.id,
            batch_ref=self.batch_ref,
            period=self.period,
            fx_rate=self.fx_rate,
            currency=self.currency,
            status=SettlementStatus(self.status),
            total_net_amount=self.total_net_amount,
            total_gross_amount=self.total_gross_amount,
            legs_hash=self.legs_hash,
            computed_at=self.computed_at,
            risk_score=self.risk_score,
            risk_recommendation=self.risk_recommendation,
            reservation_reference=self.reservation_reference,
            approved_at=self.approved_at,
            executed_at=self.executed_at,
            failure_reason=self.failure_reason,
        )


class SettlementLeg(Base):
    """One directed transfer produced by netting."""

    __tablename__ = "settlement_legs"

    __table_args__ = (
        UniqueConstraint("batch_id", "leg_seq", name="uq_leg_batch_seq"),
    )

    batch_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("settlement_batches.id"), nullable=False
    )
    leg_seq: Mapped[int] = mapped_column(Integer, nullable=False)
    payer_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("parties.id"), nullable=False
    )
    payee_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("parties.id"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    status: Mapped[LegStatus] = mapped_column(
        String(20), nullable=False, default=LegStatus.PENDING
    )
    payment_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    batch: Mapped[SettlementBatch] = relationship(back_populates="legs")

    def to_dto(self) -> SettlementLegRecord:
        return SettlementLegRecord(
            leg_id=self.id,
            leg_seq=self.leg_seq,
            payer_id=self.payer_id,
            payee_id=self.payee_id,
            amount=self.amount,
            status=LegStatus(self.status),
            payment_id=self.payment_id,
            failure_reason=self.failure_reason,
        )

    def snapshot(self) -> dict:
        """Fields covered by the batch ``legs_hash``."""
        return {
            "leg_seq": self.leg_seq,
            "payer_id": str(self.payer_id),
            "payee_id": str(self.payee_id),
            "amount": self.amount,
        }


class SettlementApproval(Base):
    """
    One institutional sign-off on a batch.

    Append-only; one row per approver and one per role within a batch.
    """

    __tablename__ = "settlement_approvals"

    __table_args__ = (
        UniqueConstraint("batch_id", "approver_id", name="uq_approval_batch_approver"),
        UniqueConstraint("batch_id", "role", name="uq_approval_batch_role"),
    )

    batch_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("settlement_batches.id"), nullable=False
    )
    approver_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    signature: Mapped[str] = mapped_column(Text, nullable=False, default="")
    approved_at: Mapped[datetime] = mapped_column(nullable=False)

    batch: Mapped[SettlementBatch] = relationship(back_populates="approvals")

    def to_dto(self) -> SettlementApprovalRecord:
        return SettlementApprovalRecord(
            approver_id=self.approver_id,
            role=self.role,
            approved_at=self.approved_at,
            signature=self.signature,
        )


class SettlementBatchInvoice(Base):
    """Invoice included in a batch, with the outstanding amount netted."""

    __tablename__ = "settlement_batch_invoices"

    __table_args__ = (
        UniqueConstraint("batch_id", "invoice_id", name="uq_batch_invoice"),
    )

    batch_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("settlement_batches.id"), nullable=False
    )
    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("invoices.id"), nullable=False
    )
    outstanding_amount: Mapped[Decimal] = mapped_column(nullable=False)


class SettlementPeriodLock(Base):
    """Held by the single live batch of a settlement period."""

    __tablename__ = "settlement_period_locks"

    __table_args__ = (
        UniqueConstraint("period", name="uq_settlement_period_lock"),
    )

    period: Mapped[str] = mapped_column(String(7), nullable=False)
    batch_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    acquired_at: Mapped[datetime] = mapped_column(nullable=False)
