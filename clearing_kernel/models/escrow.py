"""
Escrow models -- pooled settlement funds per currency and the time-boxed
reservations taken against them.

``available = balance - reserved_amount``.  A reservation moves funds from
available to reserved; releasing or expiring it moves them back.  Cash
actually leaves escrow through settlement payments, which debit
``balance`` when the reservation is consumed.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from clearing_kernel.db.base import TrackedBase
from clearing_kernel.domain.dtos import ReservationRecord
from clearing_kernel.domain.values import ReservationStatus


class EscrowAccount(TrackedBase):
    """Escrow pool for one currency."""

    __tablename__ = "escrow_accounts"

    __table_args__ = (
        Index("idx_escrow_currency", "currency", unique=True),
        CheckConstraint("balance >= 0", name="ck_escrow_balance_non_negative"),
        CheckConstraint("reserved_amount >= 0", name="ck_escrow_reserved_non_negative"),
        CheckConstraint("reserved_amount <= balance", name="ck_escrow_reserved_le_balance"),
    )

    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    balance: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    reserved_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    @property
    def available(self) -> Decimal:
        return self.balance - self.reserved_amount


class EscrowReservation(TrackedBase):
    """Funds held for a settlement batch until released or expired."""

    __tablename__ = "escrow_reservations"

    __table_args__ = (
        Index("idx_reservation_reference", "reference", unique=True),
        Index("idx_reservation_status_expiry", "status", "expires_at"),
        CheckConstraint("amount > 0", name="ck_reservation_amount_positive"),
    )

    reference: Mapped[str] = mapped_column(String(80), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    status: Mapped[ReservationStatus] = mapped_column(
        String(20), nullable=False, default=ReservationStatus.ACTIVE
    )
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    released_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def to_dto(self) -> ReservationRecord:
        return ReservationRecord(
            reservation_id=self.id,
            reference=self.reference,
            currency=self.currency,
            amount=self.amount,
            status=ReservationStatus(self.status),
            expires_at=self.expires_at,
            released_at=self.released_at,
        )
