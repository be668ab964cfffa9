"""
Delivery -- an append-only metered delivery record.

Deliveries are evidence.  Once flushed they are never updated or deleted
(ORM listeners in db/immutability.py); corrections arrive as new records.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from clearing_kernel.db.base import TrackedBase, UUIDString
from clearing_kernel.domain.dtos import DeliveryRecord


class Delivery(TrackedBase):
    """
    Metered delivery against a contract.

    Guarantees:
        - ``meter_read_end >= meter_read_start``.
        - ``0 <= quality_score <= 100``.
    """

    __tablename__ = "deliveries"

    __table_args__ = (
        Index("idx_delivery_ref", "delivery_ref", unique=True),
        Index("idx_delivery_contract_ts", "contract_id", "timestamp"),
        CheckConstraint("meter_read_end >= meter_read_start", name="ck_delivery_meter_order"),
        CheckConstraint(
            "quality_score >= 0 AND quality_score <= 100",
            name="ck_delivery_quality_range",
        ),
    )

    delivery_ref: Mapped[str] = mapped_column(String(50), nullable=False)
    contract_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("contracts.id"), nullable=False
    )
    timestamp: Mapped[datetime] = mapped_column(nullable=False)
    meter_read_start: Mapped[Decimal] = mapped_column(nullable=False)
    meter_read_end: Mapped[Decimal] = mapped_column(nullable=False)
    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    source_system: Mapped[str] = mapped_column(String(50), nullable=False)
    quality_score: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("100"))

    def __repr__(self) -> str:
        return f"<Delivery {self.delivery_ref} qty={self.quantity}>"

    def to_dto(self) -> DeliveryRecord:
        return DeliveryRecord(
            delivery_id=self.id,
            delivery_ref=self.delivery_ref,
            contract_id=self.contract_id,
            timestamp=self.timestamp,
            quantity=self.quantity,
            meter_read_start=self.meter_read_start,
            meter_read_end=self.meter_read_end,
            quality_score=self.quality_score,
            source_system=self.source_system,
        )
