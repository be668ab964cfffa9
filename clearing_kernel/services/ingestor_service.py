"""
IngestorService -- administrative import of master data, deliveries and
invoices.

Responsibility:
    The write path for records that arrive from outside the clearing
    system: market participants, supply contracts, metered deliveries and
    issued invoices.  Each record is validated at the boundary, persisted
    once and audited.  Invoices get a content hash over their financial
    fields at issue time.

Architecture position:
    Kernel > Services.  Upstream of reconciliation; the matching engine
    only ever sees what this service accepted.

Invariants enforced:
    - Deliveries: ``meter_read_end >= meter_read_start``, quantity >= 0,
      ``0 <= quality_score <= 100``.
    - Invoices: ``total_amount > 0``, ``tax_amount >= 0``,
      ``period_start <= period_end``; issued PENDING with version 1.
    - ``content_hash`` is computed once and never recomputed on write.

Failure modes:
    - PartyNotFoundError / ContractNotFoundError for dangling references.
    - InvalidAmountError / InvalidDateRangeError for malformed records.
    - ContentHashMismatchError from ``verify_invoice_hash``.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from clearing_kernel.domain.dtos import ContractInfo, DeliveryRecord, InvoiceRecord, PartyInfo
from clearing_kernel.domain.values import InvoiceStatus, PartyRole
from clearing_kernel.exceptions import (
    ContentHashMismatchError,
    ContractNotFoundError,
    InvalidAmountError,
    InvalidDateRangeError,
    InvoiceNotFoundError,
    PartyNotFoundError,
)
from clearing_kernel.logging_config import get_logger
from clearing_kernel.models.contract import Contract
from clearing_kernel.models.delivery import Delivery
from clearing_kernel.models.invoice import Invoice
from clearing_kernel.models.party import Party
from clearing_kernel.services.auditor_service import AuditorService
from clearing_kernel.utils.hashing import hash_invoice_content, to_json_safe

logger = get_logger("services.ingestor")


class IngestorService:
    """
    Validated inserts for externally sourced records.

    Non-goals:
        - Does NOT call ``session.commit()``.
        - Does NOT reconcile; newly issued invoices wait as PENDING.
    """

    def __init__(self, session: Session, auditor: AuditorService):
        self._session = session
        self._auditor = auditor

    def _require_party(self, party_id: UUID) -> Party:
        party = self._session.get(Party, party_id)
        if party is None:
            raise PartyNotFoundError(str(party_id))
        return party

    def register_party(
        self,
        code: str,
        name: str,
        role: PartyRole,
        actor_id: UUID,
    ) -> PartyInfo:
        party = Party(code=code, name=name, role=role.value, is_active=True, created_by_id=actor_id)
        self._session.add(party)
        self._session.flush()
        self._auditor.record_party_registered(party.id, code, role.value, actor_id)
        logger.info("party_registered", extra={"code": code, "role": role.value})
        return party.to_dto()

    def register_contract(
        self,
        contract_ref: str,
        party_a_id: UUID,
        party_b_id: UUID,
        contract_type: str,
        currency: str,
        start_date: date,
        actor_id: UUID,
        end_date: date | None = None,
        pricing_formula: str = "",
        metering_points: Sequence[str] = (),
        sla_thresholds: dict[str, Any] | None = None,
    ) -> ContractInfo:
        self._require_party(party_a_id)
        self._require_party(party_b_id)
        if end_date is not None and end_date < start_date:
            raise InvalidDateRangeError(start_date, end_date)

        contract = Contract(
            contract_ref=contract_ref,
            party_a_id=party_a_id,
            party_b_id=party_b_id,
            contract_type=contract_type,
            currency=currency.upper(),
            start_date=start_date,
            end_date=end_date,
            pricing_formula=pricing_formula,
            metering_points=list(metering_points),
            sla_thresholds=dict(sla_thresholds or {}),
            created_by_id=actor_id,
        )
        self._session.add(contract)
        self._session.flush()
        self._auditor.record_contract_registered(contract.id, contract_ref, contract.currency, actor_id)
        logger.info(
            "contract_registered",
            extra={"contract_ref": contract_ref, "contract_type": contract_type},
        )
        return contract.to_dto()

    def record_delivery(
        self,
        delivery_ref: str,
        contract_id: UUID,
        timestamp: datetime,
        meter_read_start: Decimal,
        meter_read_end: Decimal,
        quantity: Decimal,
        source_system: str,
        actor_id: UUID,
        quality_score: Decimal = Decimal("100"),
    ) -> DeliveryRecord:
        if self._session.get(Contract, contract_id) is None:
            raise ContractNotFoundError(str(contract_id))
        if meter_read_end < meter_read_start:
            raise InvalidAmountError(
                "meter_read_end", meter_read_end, f"must be >= meter_read_start {meter_read_start}"
            )
        if quantity < 0:
            raise InvalidAmountError("quantity", quantity, "must be >= 0")
        if not Decimal("0") <= quality_score <= Decimal("100"):
            raise InvalidAmountError("quality_score", quality_score, "must be within [0, 100]")

        delivery = Delivery(
            delivery_ref=delivery_ref,
            contract_id=contract_id,
            timestamp=timestamp,
            meter_read_start=meter_read_start,
            meter_read_end=meter_read_end,
            quantity=quantity,
            source_system=source_system,
            quality_score=quality_score,
            created_by_id=actor_id,
        )
        self._session.add(delivery)
        self._session.flush()
        self._auditor.record_delivery_recorded(delivery.id, delivery_ref, quantity, actor_id)
        return delivery.to_dto()

    def issue_invoice(
        self,
        invoice_ref: str,
        contract_id: UUID,
        issuer_id: UUID,
        counterparty_id: UUID,
        period_start: date,
        period_end: date,
        issue_date: date,
        currency: str,
        total_amount: Decimal,
        line_items: dict[str, Any],
        actor_id: UUID,
        tax_amount: Decimal = Decimal("0"),
        due_date: date | None = None,
    ) -> InvoiceRecord:
        """
        Persist a PENDING invoice with its content hash.

        ``line_items`` is stored as received; unreadable or negative
        quantities are not rejected here but surface as a 100% variance during matching.
        """
        if self._session.get(Contract, contract_id) is None:
            raise ContractNotFoundError(str(contract_id))
        self._require_party(issuer_id)
        self._require_party(counterparty_id)
        if total_amount <= 0:
            raise InvalidAmountError("total_amount", total_amount, "must be > 0")
        if tax_amount < 0:
            raise InvalidAmountError("tax_amount", tax_amount, "must be >= 0")
        if period_end < period_start:
            raise InvalidDateRangeError(period_start, period_end)

        stored_items = to_json_safe(line_items or {})
        content_hash = hash_invoice_content(
            invoice_ref=invoice_ref,
            contract_id=contract_id,
            issuer_id=issuer_id,
            counterparty_id=counterparty_id,
            period_start=period_start,
            period_end=period_end,
            currency=currency.upper(),
            total_amount=total_amount,
            tax_amount=tax_amount,
            line_items=stored_items,
        )
        invoice = Invoice(
            invoice_ref=invoice_ref,
            contract_id=contract_id,
            issuer_id=issuer_id,
            counterparty_id=counterparty_id,
            period_start=period_start,
            period_end=period_end,
            issue_date=issue_date,
            due_date=due_date,
            currency=currency.upper(),
            total_amount=total_amount,
            tax_amount=tax_amount,
            line_items=stored_items,
            status=InvoiceStatus.PENDING.value,
            matched_delivery_ids=[],
            content_hash=content_hash,
            created_by_id=actor_id,
        )
        self._session.add(invoice)
        self._session.flush()
        self._auditor.record_invoice_issued(invoice.id, invoice_ref, content_hash, actor_id)
        logger.info(
            "invoice_issued",
            extra={
                "invoice_ref": invoice_ref,
                "total_amount": str(total_amount),
                "currency": invoice.currency,
            },
        )
        return invoice.to_dto()

    def verify_invoice_hash(self, invoice_id: UUID) -> bool:
        """
        Recompute an invoice's content hash.

        Raises:
            ContentHashMismatchError: If a financial field changed since issue.
        """
        invoice = self._session.get(Invoice, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))
        actual = hash_invoice_content(
            invoice_ref=invoice.invoice_ref,
            contract_id=invoice.contract_id,
            issuer_id=invoice.issuer_id,
            counterparty_id=invoice.counterparty_id,
            period_start=invoice.period_start,
            period_end=invoice.period_end,
            currency=invoice.currency,
            total_amount=invoice.total_amount,
            tax_amount=invoice.tax_amount,
            line_items=invoice.line_items or {},
        )
        if actual != invoice.content_hash:
            logger.critical(
                "invoice_content_hash_mismatch",
                extra={"invoice_ref": invoice.invoice_ref},
            )
            raise ContentHashMismatchError("Invoice", str(invoice_id), invoice.content_hash, actual)
        return True
