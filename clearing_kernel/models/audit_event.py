"""
AuditEvent -- append-only, hash-chained record of every status transition.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from clearing_kernel.db.base import Base, UUIDString


class AuditAction(str, Enum):
    """Types of auditable actions.

    Every member is produced by exactly one ``AuditorService.record_*``
    method.
    """

    # Master data
    PARTY_REGISTERED = "party_registered"
    CONTRACT_REGISTERED = "contract_registered"
    DELIVERY_RECORDED = "delivery_recorded"
    INVOICE_ISSUED = "invoice_issued"

    # Reconciliation
    INVOICE_STATUS_CHANGED = "invoice_status_changed"
    RECONCILIATION_RUN = "reconciliation_run"

    # Disputes
    DISPUTE_RAISED = "dispute_raised"
    DISPUTE_STATUS_CHANGED = "dispute_status_changed"

    # Payments
    PAYMENT_RECORDED = "payment_recorded"
    PAYMENT_STATUS_CHANGED = "payment_status_changed"

    # Settlement
    SETTLEMENT_COMPUTED = "settlement_computed"
    SETTLEMENT_APPROVAL_RECORDED = "settlement_approval_recorded"
    SETTLEMENT_STATUS_CHANGED = "settlement_status_changed"
    SETTLEMENT_LEG_STATUS_CHANGED = "settlement_leg_status_changed"

    # Escrow
    ESCROW_FUNDED = "escrow_funded"
    ESCROW_RESERVED = "escrow_reserved"
    ESCROW_RELEASED = "escrow_released"
    ESCROW_EXPIRED = "escrow_expired"


class AuditEvent(Base):
    """
    Audit event with hash chain for tamper evidence.

    Guarantees:
        - seq is globally unique and monotonically increasing.
        - hash = H(entity_type | entity_id | action | payload_hash | prev_hash).
        - prev_hash is None only for the genesis event.
        - payload holds ``old_values`` and ``new_values`` for transitions.
    """

    __tablename__ = "audit_events"

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_action", "action"),
        Index("idx_audit_seq", "seq", unique=True),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    action: Mapped[AuditAction] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEvent {self.seq} {self.action} on {self.entity_type}:{self.entity_id}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None
