"""
Typed Exception Hierarchy for the Clearing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Reconciliation and settlement run unattended against money.  Callers must be
able to tell a locked period from a tampered batch without parsing messages:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        orchestrator.compute("2024-10", Decimal("1"), actor_id)
    except PeriodLockedError as e:
        log.warning("period busy", extra={"period": e.period})
        api_response(code=e.code, holder=e.holder_batch_ref)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ClearingKernelError (base)
    |
    +-- EntityNotFoundError
    |   +-- PartyNotFoundError
    |   +-- ContractNotFoundError
    |   +-- InvoiceNotFoundError
    |   +-- PaymentNotFoundError
    |   +-- DisputeNotFoundError
    |   +-- SettlementBatchNotFoundError
    |
    +-- ValidationError
    |   +-- InvalidPeriodError
    |   +-- InvalidFxRateError
    |   +-- InvalidRuleError
    |   +-- InvalidAmountError
    |   +-- InvalidDateRangeError
    |
    +-- LifecycleError
    |   +-- InvalidTransitionError
    |
    +-- ApprovalError
    |   +-- UnauthorizedApproverError
    |   +-- DuplicateApprovalError
    |   +-- ApprovalNotAllowedError
    |
    +-- SettlementError
    |   +-- SettlementNotExecutableError
    |   +-- SettlementSnapshotTamperedError
    |
    +-- EscrowError
    |   +-- EscrowAccountNotFoundError
    |   +-- InsufficientEscrowFundsError
    |   +-- ReservationNotFoundError
    |   +-- ReservationAlreadyReleasedError
    |   +-- DuplicateReservationError
    |
    +-- PaymentError
    |   +-- OverpaymentError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |   +-- PeriodLockedError
    |
    +-- IntegrityError
    |   +-- ContentHashMismatchError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- AuditError
        +-- AuditChainBrokenError

===============================================================================
ERROR HANDLING POLICY
===============================================================================

Per-invoice and per-leg data problems never abort a run: services catch the
typed error, roll back that item's savepoint and report an ``ItemError``
carrying the exception's ``code``.  Escrow exhaustion at execution time is a
structured result outcome (``RESERVATION_FAILED``).  Everything else
propagates to the caller, which owns the transaction.
"""


class ClearingKernelError(Exception):
    """
    Base exception for all clearing kernel errors.

    All subclasses must have a ``code`` class attribute for
    machine-readable error identification.
    """

    code: str = "CLEARING_KERNEL_ERROR"


# Lookup failures


class EntityNotFoundError(ClearingKernelError):
    """A referenced entity does not exist."""

    code: str = "ENTITY_NOT_FOUND"
    entity_type: str = "Entity"

    def __init__(self, entity_id: str):
        self.entity_id = str(entity_id)
        super().__init__(f"{self.entity_type} {entity_id} not found")


class PartyNotFoundError(EntityNotFoundError):
    code: str = "PARTY_NOT_FOUND"
    entity_type: str = "Party"


class ContractNotFoundError(EntityNotFoundError):
    code: str = "CONTRACT_NOT_FOUND"
    entity_type: str = "Contract"


class InvoiceNotFoundError(EntityNotFoundError):
    code: str = "INVOICE_NOT_FOUND"
    entity_type: str = "Invoice"


class PaymentNotFoundError(EntityNotFoundError):
    code: str = "PAYMENT_NOT_FOUND"
    entity_type: str = "Payment"


class DisputeNotFoundError(EntityNotFoundError):
    code: str = "DISPUTE_NOT_FOUND"
    entity_type: str = "Dispute"


class SettlementBatchNotFoundError(EntityNotFoundError):
    code: str = "SETTLEMENT_BATCH_NOT_FOUND"
    entity_type: str = "SettlementBatch"


# Input validation


class ValidationError(ClearingKernelError):
    """Base exception for rejected inputs."""

    code: str = "VALIDATION_ERROR"


class InvalidPeriodError(ValidationError):
    """Settlement period is not a YYYY-MM string."""

    code: str = "INVALID_PERIOD"

    def __init__(self, period: str):
        self.period = period
        super().__init__(f"Invalid settlement period {period!r}: expected YYYY-MM")


class InvalidFxRateError(ValidationError):
    """FX rate must be strictly positive."""

    code: str = "INVALID_FX_RATE"

    def __init__(self, fx_rate: object):
        self.fx_rate = str(fx_rate)
        super().__init__(f"Invalid FX rate {fx_rate}: must be > 0")


class InvalidRuleError(ValidationError):
    """A reconciliation rule has an unknown type or an unusable value."""

    code: str = "INVALID_RULE"

    def __init__(self, rule_type: str, reason: str):
        self.rule_type = rule_type
        self.reason = reason
        super().__init__(f"Invalid reconciliation rule {rule_type}: {reason}")


class InvalidAmountError(ValidationError):
    """Monetary amount or quantity outside its permitted range."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, field: str, value: object, reason: str):
        self.field = field
        self.value = str(value)
        self.reason = reason
        super().__init__(f"Invalid {field} {value}: {reason}")


class InvalidDateRangeError(ValidationError):
    """Start date falls after end date."""

    code: str = "INVALID_DATE_RANGE"

    def __init__(self, start: object, end: object):
        self.start = str(start)
        self.end = str(end)
        super().__init__(f"Invalid date range: {start} is after {end}")


# Lifecycle (state machine) violations


class LifecycleError(ClearingKernelError):
    """Base exception for state machine violations."""

    code: str = "LIFECYCLE_ERROR"


class InvalidTransitionError(LifecycleError):
    """Requested status change is not an edge of the entity's state machine."""

    code: str = "INVALID_TRANSITION"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        from_status: str,
        to_status: str,
    ):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"{entity_type} {entity_id}: transition {from_status} -> "
            f"{to_status} is not allowed"
        )


# Approval quorum


class ApprovalError(ClearingKernelError):
    """Base exception for settlement approval errors."""

    code: str = "APPROVAL_ERROR"


class UnauthorizedApproverError(ApprovalError):
    """Approver role is not one of the authorized institutional roles."""

    code: str = "UNAUTHORIZED_APPROVER"

    def __init__(self, approver_id: str, role: str):
        self.approver_id = str(approver_id)
        self.role = role
        super().__init__(f"Approver {approver_id} with role {role} is not authorized")


class DuplicateApprovalError(ApprovalError):
    """Same approver or same institutional role approved twice."""

    code: str = "DUPLICATE_APPROVAL"

    def __init__(self, batch_id: str, approver_id: str, role: str, reason: str):
        self.batch_id = str(batch_id)
        self.approver_id = str(approver_id)
        self.role = role
        self.reason = reason
        super().__init__(
            f"Duplicate approval on batch {batch_id} by {approver_id} ({role}): {reason}"
        )


class ApprovalNotAllowedError(ApprovalError):
    """Batch is not in a status that accepts approvals."""

    code: str = "APPROVAL_NOT_ALLOWED"

    def __init__(self, batch_id: str, status: str):
        self.batch_id = str(batch_id)
        self.status = status
        super().__init__(f"Batch {batch_id} in status {status} does not accept approvals")


# Settlement execution


class SettlementError(ClearingKernelError):
    """Base exception for settlement batch errors."""

    code: str = "SETTLEMENT_ERROR"


class SettlementNotExecutableError(SettlementError):
    """Only APPROVED batches can be executed."""

    code: str = "SETTLEMENT_NOT_EXECUTABLE"

    def __init__(self, batch_id: str, status: str):
        self.batch_id = str(batch_id)
        self.status = status
        super().__init__(f"Batch {batch_id} in status {status} cannot be executed")


class SettlementSnapshotTamperedError(SettlementError):
    """Persisted legs no longer match the digest taken at compute time."""

    code: str = "SETTLEMENT_SNAPSHOT_TAMPERED"

    def __init__(self, batch_id: str, expected_hash: str, actual_hash: str):
        self.batch_id = str(batch_id)
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Settlement legs of batch {batch_id} changed after computation: "
            f"expected {expected_hash}, found {actual_hash}"
        )


# Escrow


class EscrowError(ClearingKernelError):
    """Base exception for escrow errors."""

    code: str = "ESCROW_ERROR"


class EscrowAccountNotFoundError(EscrowError):
    code: str = "ESCROW_ACCOUNT_NOT_FOUND"

    def __init__(self, currency: str):
        self.currency = currency
        super().__init__(f"No escrow account for currency {currency}")


class InsufficientEscrowFundsError(EscrowError):
    code: str = "INSUFFICIENT_ESCROW_FUNDS"

    def __init__(self, currency: str, requested: object, available: object):
        self.currency = currency
        self.requested = str(requested)
        self.available = str(available)
        super().__init__(
            f"Insufficient escrow funds in {currency}: requested {requested}, "
            f"available {available}"
        )


class ReservationNotFoundError(EscrowError):
    code: str = "RESERVATION_NOT_FOUND"

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Escrow reservation {reference} not found")


class ReservationAlreadyReleasedError(EscrowError):
    """A reservation may be released exactly once."""

    code: str = "RESERVATION_ALREADY_RELEASED"

    def __init__(self, reference: str, status: str):
        self.reference = reference
        self.status = status
        super().__init__(f"Escrow reservation {reference} is already {status}")


class DuplicateReservationError(EscrowError):
    code: str = "DUPLICATE_RESERVATION"

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Escrow reservation {reference} already exists")


# Payments


class PaymentError(ClearingKernelError):
    """Base exception for payment errors."""

    code: str = "PAYMENT_ERROR"


class OverpaymentError(PaymentError):
    """Completed payments would exceed invoice total plus tolerance."""

    code: str = "OVERPAYMENT"

    def __init__(
        self,
        invoice_id: str,
        total_amount: object,
        already_paid: object,
        attempted: object,
    ):
        self.invoice_id = str(invoice_id)
        self.total_amount = str(total_amount)
        self.already_paid = str(already_paid)
        self.attempted = str(attempted)
        super().__init__(
            f"Payment of {attempted} on invoice {invoice_id} exceeds outstanding "
            f"balance (total {total_amount}, already paid {already_paid})"
        )


# Concurrency


class ConcurrencyError(ClearingKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


class PeriodLockedError(ConcurrencyError):
    """Another live batch already holds the settlement period."""

    code: str = "PERIOD_LOCKED"

    def __init__(self, period: str, holder_batch_ref: str | None = None):
        self.period = period
        self.holder_batch_ref = holder_batch_ref
        super().__init__(
            f"Settlement period {period} is locked"
            + (f" by batch {holder_batch_ref}" if holder_batch_ref else "")
        )


# Content integrity


class IntegrityError(ClearingKernelError):
    """Base exception for content-hash mismatches."""

    code: str = "INTEGRITY_ERROR"


class ContentHashMismatchError(IntegrityError):
    code: str = "CONTENT_HASH_MISMATCH"

    def __init__(self, entity_type: str, entity_id: str, expected: str, actual: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{entity_type} {entity_id} content hash mismatch: "
            f"expected {expected}, computed {actual}"
        )


# Immutability


class ImmutabilityError(ClearingKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    Deliveries, audit events and settlement approvals are immutable from
    creation; parties and disputes cannot be deleted.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Audit


class AuditError(ClearingKernelError):
    """Base exception for audit-related errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_event_id: str, expected_hash: str, actual_hash: str):
        self.audit_event_id = audit_event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {audit_event_id}: "
            f"expected {expected_hash}, found {actual_hash}"
        )
