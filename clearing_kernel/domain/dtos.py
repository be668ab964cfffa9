"""
DTOs -- immutable data structures crossing the persistence boundary.

Responsibility:
    Selectors return these records; engines consume them; services build
    the ``New*`` request objects to ask the ledger store for writes.
    Nothing here touches the ORM.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  ``to_dto()`` on each model is the
    only converter and lives on the model side.

Invariants enforced:
    - Amounts and quantities are ``Decimal``.
    - Collections are tuples so records can be hashed and shared safely.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from clearing_kernel.domain.commodity import CommodityQuantity
from clearing_kernel.domain.values import (
    DisputeReason,
    DisputeStatus,
    InvoiceStatus,
    LegStatus,
    PartyRole,
    PaymentStatus,
    ReservationStatus,
    SettlementStatus,
)


@dataclass(frozen=True)
class PartyInfo:
    party_id: UUID
    code: str
    name: str
    role: PartyRole
    is_active: bool = True


@dataclass(frozen=True)
class ContractInfo:
    contract_id: UUID
    contract_ref: str
    party_a_id: UUID
    party_b_id: UUID
    contract_type: str
    currency: str
    start_date: date
    end_date: date | None
    pricing_formula: str = ""
    metering_points: tuple[str, ...] = ()
    sla_thresholds: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeliveryRecord:
    delivery_id: UUID
    delivery_ref: str
    contract_id: UUID
    timestamp: datetime
    quantity: Decimal
    meter_read_start: Decimal
    meter_read_end: Decimal
    quality_score: Decimal
    source_system: str


@dataclass(frozen=True)
class InvoiceRecord:
    """
    Read model of an invoice.

    ``quantities`` is the declared commodity parsed from the raw line
    items; ``line_items`` keeps the raw mapping for display and hashing.
    """

    invoice_id: UUID
    invoice_ref: str
    contract_id: UUID
    issuer_id: UUID
    counterparty_id: UUID
    period_start: date
    period_end: date
    issue_date: date
    due_date: date | None
    currency: str
    total_amount: Decimal
    tax_amount: Decimal
    quantities: CommodityQuantity
    status: InvoiceStatus
    line_items: dict[str, Any] = field(default_factory=dict)
    confidence_score: Decimal | None = None
    matched_delivery_ids: tuple[UUID, ...] = ()
    content_hash: str = ""
    settled_batch_id: UUID | None = None
    version: int = 1


@dataclass(frozen=True)
class PaymentRecord:
    payment_id: UUID
    payment_ref: str
    invoice_id: UUID | None
    payer_id: UUID
    payee_id: UUID
    amount: Decimal
    currency: str
    value_date: date
    status: PaymentStatus
    bank_reference: str = ""
    settlement_batch_id: UUID | None = None
    settlement_leg_id: UUID | None = None


@dataclass(frozen=True)
class DisputeRecord:
    dispute_id: UUID
    dispute_ref: str
    invoice_id: UUID
    contract_id: UUID
    raised_by_id: UUID
    received_by_id: UUID
    reason_code: DisputeReason
    status: DisputeStatus
    description: str
    sla_deadline: datetime
    amount_in_dispute: Decimal | None = None
    ruling_amount: Decimal | None = None
    resolved_at: datetime | None = None


@dataclass(frozen=True)
class SettlementLegRecord:
    leg_id: UUID
    leg_seq: int
    payer_id: UUID
    payee_id: UUID
    amount: Decimal
    status: LegStatus
    payment_id: UUID | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class SettlementApprovalRecord:
    approver_id: UUID
    role: str
    approved_at: datetime
    signature: str = ""


@dataclass(frozen=True)
class SettlementBatchRecord:
    batch_id: UUID
    batch_ref: str
    period: str
    fx_rate: Decimal
    currency: str
    status: SettlementStatus
    total_net_amount: Decimal
    total_gross_amount: Decimal
    legs_hash: str
    computed_at: datetime
    risk_score: int = 0
    risk_recommendation: str = ""
    reservation_reference: str | None = None
    approved_at: datetime | None = None
    executed_at: datetime | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class ReservationRecord:
    reservation_id: UUID
    reference: str
    currency: str
    amount: Decimal
    status: ReservationStatus
    expires_at: datetime
    released_at: datetime | None = None


# ---------------------------------------------------------------------------
# Write requests
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NewDispute:
    invoice_id: UUID
    contract_id: UUID
    raised_by_id: UUID
    received_by_id: UUID
    reason_code: DisputeReason
    description: str
    sla_deadline: datetime
    amount_in_dispute: Decimal | None = None


@dataclass(frozen=True)
class NewPayment:
    payer_id: UUID
    payee_id: UUID
    amount: Decimal
    currency: str
    value_date: date
    invoice_id: UUID | None = None
    bank_reference: str = ""
    status: PaymentStatus = PaymentStatus.PENDING
    settlement_batch_id: UUID | None = None
    settlement_leg_id: UUID | None = None


# ---------------------------------------------------------------------------
# Per-item failure reporting
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ItemError:
    """One item that could not be processed; the run carries on without it."""

    item_id: str
    code: str
    message: str

    @classmethod
    def from_exception(cls, item_id: object, exc: Exception) -> "ItemError":
        code = getattr(exc, "code", type(exc).__name__)
        return cls(item_id=str(item_id), code=code, message=str(exc))
