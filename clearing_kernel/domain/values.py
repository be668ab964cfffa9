"""
Values -- enumerations shared by the kernel, the engines and the services.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  ORM models store these as strings;
    engines consume them through DTOs.
"""

from enum import Enum


class PartyRole(str, Enum):
    """Market role of a counterparty."""

    GENERATOR = "GENERATOR"
    DISTRIBUTOR = "DISTRIBUTOR"
    TRANSMISSION = "TRANSMISSION"
    FUEL_SUPPLIER = "FUEL_SUPPLIER"
    FINANCIAL = "FINANCIAL"
    REGULATOR = "REGULATOR"


class CommodityType(str, Enum):
    """Declared commodity on an invoice or contract."""

    ENERGY = "energy"
    GAS = "gas"
    FUEL = "fuel"


class InvoiceStatus(str, Enum):
    """
    Invoice lifecycle.

    PENDING -> MATCHED / PARTIALLY_MATCHED / DISPUTED -> PARTIALLY_PAID -> PAID.
    PAID is terminal.  MATCHED always carries a confidence score.
    """

    PENDING = "PENDING"
    MATCHED = "MATCHED"
    PARTIALLY_MATCHED = "PARTIALLY_MATCHED"
    DISPUTED = "DISPUTED"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REVERSED = "REVERSED"


class DisputeStatus(str, Enum):
    OPEN = "OPEN"
    UNDER_REVIEW = "UNDER_REVIEW"
    EVIDENCE_REQUESTED = "EVIDENCE_REQUESTED"
    RESOLVED = "RESOLVED"
    ESCALATED = "ESCALATED"
    CLOSED = "CLOSED"


class DisputeReason(str, Enum):
    QUANTITY_VARIANCE = "QUANTITY_VARIANCE"
    PRICE_VARIANCE = "PRICE_VARIANCE"
    MISSING_DELIVERY_PROOF = "MISSING_DELIVERY_PROOF"
    LATE_DELIVERY = "LATE_DELIVERY"
    QUALITY_ISSUE = "QUALITY_ISSUE"
    DUPLICATE_INVOICE = "DUPLICATE_INVOICE"
    FX_MISMATCH = "FX_MISMATCH"
    CONTRACT_BREACH = "CONTRACT_BREACH"
    OTHER = "OTHER"


class SettlementStatus(str, Enum):
    """
    Settlement batch lifecycle.

    COMPUTED -> APPROVED -> EXECUTING -> EXECUTED | FAILED, or
    COMPUTED -> REJECTED.  A FAILED batch is recomputed, never resumed.
    """

    COMPUTED = "COMPUTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXECUTING = "EXECUTING"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"


class LegStatus(str, Enum):
    PENDING = "PENDING"
    COMMITTED = "COMMITTED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"


class ReservationStatus(str, Enum):
    ACTIVE = "ACTIVE"
    RELEASED = "RELEASED"
    EXPIRED = "EXPIRED"


class ExceptionSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class ExceptionType(str, Enum):
    QUANTITY_VARIANCE = "QUANTITY_VARIANCE"
    NO_MATCHING_DELIVERIES = "NO_MATCHING_DELIVERIES"
