"""
PaymentService -- bilateral payment lifecycle against invoices.

Responsibility:
    Records payments as PENDING, moves them through PROCESSING to COMPLETED
    or FAILED, and reverses completed ones.  Completion is the only event
    that reduces an invoice's outstanding balance, so it is also where the
    invoice advances to PARTIALLY_PAID or PAID.

Architecture position:
    Kernel > Services.  Writes go through ``LedgerStore``.

Invariants enforced:
    - Completed payments on an invoice never exceed
      ``total_amount + overpayment_tolerance``; a completion that would is
      rejected with ``OverpaymentError`` and leaves the payment untouched.
    - Payment transitions follow ``PAYMENT_TRANSITIONS``.

Failure modes:
    - PaymentNotFoundError, InvoiceNotFoundError.
    - OverpaymentError.
    - InvalidAmountError for non-positive amounts.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from clearing_kernel.domain.clock import Clock, SystemClock
from clearing_kernel.domain.dtos import NewPayment, PaymentRecord
from clearing_kernel.domain.lifecycle import INVOICE_TRANSITIONS, can_transition
from clearing_kernel.domain.values import InvoiceStatus, PaymentStatus
from clearing_kernel.exceptions import (
    InvalidAmountError,
    InvoiceNotFoundError,
    OverpaymentError,
    PaymentNotFoundError,
)
from clearing_kernel.logging_config import get_logger
from clearing_kernel.selectors.ledger_selector import LedgerSelector
from clearing_kernel.services.auditor_service import AuditorService
from clearing_kernel.services.ledger_store import LedgerStore

logger = get_logger("services.payment")


class PaymentService:
    """
    Payment recording and completion.

    Non-goals:
        - Does NOT call ``session.commit()``.
        - Does NOT move money; a payment is the record of a transfer made
          elsewhere.
        - Does NOT reopen PAID invoices on reversal; PAID is terminal and a
          reversal is surfaced in the audit trail and the logs.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        clock: Clock | None = None,
        overpayment_tolerance: Decimal = Decimal("0"),
    ):
        self._clock = clock or SystemClock()
        self._selector = LedgerSelector(session)
        self._store = LedgerStore(session, auditor, self._clock)
        self._tolerance = overpayment_tolerance

    def _require(self, payment_id: UUID) -> PaymentRecord:
        payment = self._selector.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))
        return payment

    def record_payment(self, request: NewPayment, actor_id: UUID) -> PaymentRecord:
        if request.amount <= 0:
            raise InvalidAmountError("payment amount", request.amount, "must be > 0")
        if request.invoice_id is not None and self._selector.get_invoice(request.invoice_id) is None:
            raise InvoiceNotFoundError(str(request.invoice_id))
        if request.status != PaymentStatus.PENDING:
            request = NewPayment(
                payer_id=request.payer_id,
                payee_id=request.payee_id,
                amount=request.amount,
                currency=request.currency,
                value_date=request.value_date,
                invoice_id=request.invoice_id,
                bank_reference=request.bank_reference,
            )
        payment_id = self._store.create_payment(request, actor_id)
        return self._require(payment_id)

    def mark_processing(self, payment_id: UUID, actor_id: UUID) -> PaymentRecord:
        self._store.update_payment_status(payment_id, PaymentStatus.PROCESSING, actor_id)
        return self._require(payment_id)

    def complete_payment(self, payment_id: UUID, actor_id: UUID) -> PaymentRecord:
        """
        Mark a payment COMPLETED and advance its invoice.

        Raises:
            OverpaymentError: If completion would overpay the invoice.
        """
        payment = self._require(payment_id)
        invoice = None
        if payment.invoice_id is not None:
            invoice = self._selector.get_invoice(payment.invoice_id)
            if invoice is None:
                raise InvoiceNotFoundError(str(payment.invoice_id))
            already_paid = self._selector.completed_amount_for_invoice(invoice.invoice_id)
            if already_paid + payment.amount > invoice.total_amount + self._tolerance:
                logger.warning(
                    "payment_overpayment_rejected",
                    extra={
                        "payment_ref": payment.payment_ref,
                        "invoice_ref": invoice.invoice_ref,
                        "already_paid": str(already_paid),
                        "attempted": str(payment.amount),
                    },
                )
                raise OverpaymentError(
                    invoice.invoice_id, invoice.total_amount, already_paid, payment.amount
                )

        self._store.update_payment_status(payment_id, PaymentStatus.COMPLETED, actor_id)

        if invoice is not None:
            paid = self._selector.completed_amount_for_invoice(invoice.invoice_id)
            target = (
                InvoiceStatus.PAID if paid >= invoice.total_amount else InvoiceStatus.PARTIALLY_PAID
            )
            if can_transition(INVOICE_TRANSITIONS, invoice.status, target):
                self._store.update_invoice_status(invoice.invoice_id, target, actor_id)
            elif target != invoice.status:
                logger.info(
                    "payment_invoice_status_kept",
                    extra={
                        "invoice_ref": invoice.invoice_ref,
                        "invoice_status": invoice.status.value,
                        "paid": str(paid),
                    },
                )
        return self._require(payment_id)

    def fail_payment(self, payment_id: UUID, actor_id: UUID, reason: str = "") -> PaymentRecord:
        self._store.update_payment_status(payment_id, PaymentStatus.FAILED, actor_id, reason=reason)
        return self._require(payment_id)

    def reverse_payment(self, payment_id: UUID, actor_id: UUID, reason: str) -> PaymentRecord:
        payment = self._require(payment_id)
        self._store.reverse_payment(payment_id, actor_id, reason)
        logger.warning(
            "payment_reversed",
            extra={"payment_ref": payment.payment_ref, "amount": str(payment.amount), "reason": reason},
        )
        return self._require(payment_id)
