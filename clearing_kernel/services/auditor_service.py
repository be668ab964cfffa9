"""
AuditorService -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Creates immutable, hash-chained audit events for every status
    transition in reconciliation, disputes, payments, escrow and
    settlement.  Provides chain validation for tamper detection and trace
    queries for forensic review.

Architecture position:
    Kernel > Services -- called by the ledger store, the kernel services
    and the settlement orchestrator.  This is the Audit Sink.

Invariants enforced:
    - Sequence monotonicity via SequenceService.
    - Chain integrity: ``hash = H(entity_type|entity_id|action|payload_hash|prev_hash)``.
    - Append-only: AuditEvent rows are protected by ORM listeners.
    - Transition payloads always carry ``old_values`` and ``new_values``.

Failure modes:
    - AuditChainBrokenError from ``validate_chain()`` when a stored hash,
      payload hash or prev_hash link does not match.

Audit relevance:
    Every call below writes exactly one event.  Callers are responsible
    for not calling it when nothing changed.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from clearing_kernel.domain.clock import Clock, SystemClock
from clearing_kernel.exceptions import AuditChainBrokenError
from clearing_kernel.logging_config import get_logger
from clearing_kernel.models.audit_event import AuditAction, AuditEvent
from clearing_kernel.services.sequence_service import SequenceService
from clearing_kernel.utils.hashing import hash_audit_event, hash_payload, to_json_safe

logger = get_logger("services.auditor")


@dataclass(frozen=True)
class AuditTraceEntry:
    """A single entry in an audit trace."""

    seq: int
    action: AuditAction
    occurred_at: datetime
    actor_id: UUID
    payload: dict[str, Any]
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    """All audit events for one entity, in chain order."""

    entity_type: str
    entity_id: UUID
    entries: tuple[AuditTraceEntry, ...]

    @property
    def is_empty(self) -> bool:
        return len(self.entries) == 0

    @property
    def actions(self) -> tuple[AuditAction, ...]:
        return tuple(entry.action for entry in self.entries)

    @property
    def last_action(self) -> AuditAction | None:
        return self.entries[-1].action if self.entries else None


def _transition_payload(
    old_status: Any,
    new_status: Any,
    old_values: dict[str, Any] | None = None,
    new_values: dict[str, Any] | None = None,
    **context: Any,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "old_values": {"status": old_status, **(old_values or {})},
        "new_values": {"status": new_status, **(new_values or {})},
    }
    payload.update(context)
    return payload


class AuditorService:
    """
    Service for creating and validating tamper-evident audit events.

    Guarantees:
        - Every event's ``hash`` is a deterministic function of
          ``(entity_type, entity_id, action, payload_hash, prev_hash)``.
        - Sequence numbers come from ``SequenceService``.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        last_event = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq.desc()).limit(1)
        ).scalar_one_or_none()
        return last_event.hash if last_event else None

    def _create_audit_event(
        self,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        actor_id: UUID,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """
        Append one event to the chain.

        Postconditions:
            - A new ``AuditEvent`` row is flushed with a fresh ``seq`` and
              ``hash == H(entity_type, entity_id, action, payload_hash, prev_hash)``.
        """
        seq = self._sequence_service.next_value(SequenceService.AUDIT_EVENT)
        prev_hash = self._get_last_hash()

        payload_data = to_json_safe(payload or {})
        computed_payload_hash = hash_payload(payload_data)

        event_hash = hash_audit_event(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action.value,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
        )

        audit_event = AuditEvent(
            seq=seq,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            occurred_at=self._clock.now(),
            payload=payload_data,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
            hash=event_hash,
        )
        self._session.add(audit_event)
        self._session.flush()

        logger.info(
            "audit_event_created",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action.value,
                "seq": seq,
            },
        )
        return audit_event

    # Master data

    def record_party_registered(self, party_id: UUID, code: str, role: str, actor_id: UUID) -> AuditEvent:
        return self._create_audit_event(
            "Party", party_id, AuditAction.PARTY_REGISTERED, actor_id,
            {"new_values": {"code": code, "role": role}},
        )

    def record_contract_registered(
        self, contract_id: UUID, contract_ref: str, currency: str, actor_id: UUID
    ) -> AuditEvent:
        return self._create_audit_event(
            "Contract", contract_id, AuditAction.CONTRACT_REGISTERED, actor_id,
            {"new_values": {"contract_ref": contract_ref, "currency": currency}},
        )

    def record_delivery_recorded(
        self, delivery_id: UUID, delivery_ref: str, quantity: Any, actor_id: UUID
    ) -> AuditEvent:
        return self._create_audit_event(
            "Delivery", delivery_id, AuditAction.DELIVERY_RECORDED, actor_id,
            {"new_values": {"delivery_ref": delivery_ref, "quantity": quantity}},
        )

    def record_invoice_issued(
        self, invoice_id: UUID, invoice_ref: str, content_hash: str, actor_id: UUID
    ) -> AuditEvent:
        return self._create_audit_event(
            "Invoice", invoice_id, AuditAction.INVOICE_ISSUED, actor_id,
            {"new_values": {"invoice_ref": invoice_ref, "content_hash": content_hash}},
        )

    # Reconciliation

    def record_invoice_status_changed(
        self,
        invoice_id: UUID,
        old_status: str,
        new_status: str,
        actor_id: UUID,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
    ) -> AuditEvent:
        return self._create_audit_event(
            "Invoice", invoice_id, AuditAction.INVOICE_STATUS_CHANGED, actor_id,
            _transition_payload(old_status, new_status, old_values, new_values),
        )

    def record_reconciliation_run(
        self, run_id: UUID, summary: dict[str, Any], actor_id: UUID
    ) -> AuditEvent:
        return self._create_audit_event(
            "ReconciliationRun", run_id, AuditAction.RECONCILIATION_RUN, actor_id,
            {"summary": summary},
        )

    # Disputes

    def record_dispute_raised(
        self, dispute_id: UUID, dispute_ref: str, invoice_id: UUID, reason_code: str, actor_id: UUID
    ) -> AuditEvent:
        return self._create_audit_event(
            "Dispute", dispute_id, AuditAction.DISPUTE_RAISED, actor_id,
            {
                "new_values": {
                    "dispute_ref": dispute_ref,
                    "invoice_id": invoice_id,
                    "reason_code": reason_code,
                    "status": "OPEN",
                },
            },
        )

    def record_dispute_status_changed(
        self,
        dispute_id: UUID,
        old_status: str,
        new_status: str,
        actor_id: UUID,
        new_values: dict[str, Any] | None = None,
    ) -> AuditEvent:
        return self._create_audit_event(
            "Dispute", dispute_id, AuditAction.DISPUTE_STATUS_CHANGED, actor_id,
            _transition_payload(old_status, new_status, new_values=new_values),
        )

    # Payments

    def record_payment_recorded(
        self, payment_id: UUID, payment_ref: str, amount: Any, status: str, actor_id: UUID
    ) -> AuditEvent:
        return self._create_audit_event(
            "Payment", payment_id, AuditAction.PAYMENT_RECORDED, actor_id,
            {"new_values": {"payment_ref": payment_ref, "amount": amount, "status": status}},
        )

    def record_payment_status_changed(
        self, payment_id: UUID, old_status: str, new_status: str, actor_id: UUID, reason: str = ""
    ) -> AuditEvent:
        return self._create_audit_event(
            "Payment", payment_id, AuditAction.PAYMENT_STATUS_CHANGED, actor_id,
            _transition_payload(old_status, new_status, reason=reason),
        )

    # Settlement

    def record_settlement_computed(
        self,
        batch_id: UUID,
        batch_ref: str,
        period: str,
        legs_hash: str,
        summary: dict[str, Any],
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            "SettlementBatch", batch_id, AuditAction.SETTLEMENT_COMPUTED, actor_id,
            {
                "new_values": {
                    "batch_ref": batch_ref,
                    "period": period,
                    "status": "COMPUTED",
                    "legs_hash": legs_hash,
                },
                "summary": summary,
            },
        )

    def record_settlement_approval(
        self, batch_id: UUID, approver_id: UUID, role: str, approvals_count: int, actor_id: UUID
    ) -> AuditEvent:
        return self._create_audit_event(
            "SettlementBatch", batch_id, AuditAction.SETTLEMENT_APPROVAL_RECORDED, actor_id,
            {
                "new_values": {"approver_id": approver_id, "role": role},
                "approvals_count": approvals_count,
            },
        )

    def record_settlement_status_changed(
        self,
        batch_id: UUID,
        old_status: str,
        new_status: str,
        actor_id: UUID,
        new_values: dict[str, Any] | None = None,
        reason: str = "",
    ) -> AuditEvent:
        return self._create_audit_event(
            "SettlementBatch", batch_id, AuditAction.SETTLEMENT_STATUS_CHANGED, actor_id,
            _transition_payload(old_status, new_status, new_values=new_values, reason=reason),
        )

    def record_leg_status_changed(
        self,
        leg_id: UUID,
        batch_id: UUID,
        old_status: str,
        new_status: str,
        actor_id: UUID,
        reason: str = "",
    ) -> AuditEvent:
        return self._create_audit_event(
            "SettlementLeg", leg_id, AuditAction.SETTLEMENT_LEG_STATUS_CHANGED, actor_id,
            _transition_payload(old_status, new_status, batch_id=batch_id, reason=reason),
        )

    # Escrow

    def record_escrow_funded(
        self, account_id: UUID, currency: str, old_balance: Any, new_balance: Any, actor_id: UUID
    ) -> AuditEvent:
        return self._create_audit_event(
            "EscrowAccount", account_id, AuditAction.ESCROW_FUNDED, actor_id,
            {
                "old_values": {"balance": old_balance},
                "new_values": {"balance": new_balance},
                "currency": currency,
            },
        )

    def record_escrow_reserved(
        self, reservation_id: UUID, reference: str, amount: Any, expires_at: datetime, actor_id: UUID
    ) -> AuditEvent:
        return self._create_audit_event(
            "EscrowReservation", reservation_id, AuditAction.ESCROW_RESERVED, actor_id,
            {
                "new_values": {
                    "reference": reference,
                    "amount": amount,
                    "status": "ACTIVE",
                    "expires_at": expires_at,
                },
            },
        )

    def record_escrow_released(
        self, reservation_id: UUID, reference: str, settled: bool, actor_id: UUID
    ) -> AuditEvent:
        return self._create_audit_event(
            "EscrowReservation", reservation_id, AuditAction.ESCROW_RELEASED, actor_id,
            _transition_payload("ACTIVE", "RELEASED", reference=reference, settled=settled),
        )

    def record_escrow_expired(self, reservation_id: UUID, reference: str, actor_id: UUID) -> AuditEvent:
        return self._create_audit_event(
            "EscrowReservation", reservation_id, AuditAction.ESCROW_EXPIRED, actor_id,
            _transition_payload("ACTIVE", "EXPIRED", reference=reference),
        )

    # Verification and queries

    def validate_chain(self) -> bool:
        """
        Validate the entire audit chain.

        Postconditions:
            - Returns ``True`` only if every stored payload hashes to its
              ``payload_hash``, every ``hash`` matches its recomputed
              value and every ``prev_hash`` links to its predecessor.

        Raises:
            AuditChainBrokenError: At the first event that fails.
        """
        events = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq)
        ).scalars().all()

        previous_hash: str | None = None
        for event in events:
            if event.prev_hash != previous_hash:
                logger.critical("audit_chain_broken", extra={"seq": event.seq, "check": "link"})
                raise AuditChainBrokenError(str(event.id), previous_hash or "None", event.prev_hash or "None")

            recomputed_payload_hash = hash_payload(event.payload or {})
            if recomputed_payload_hash != event.payload_hash:
                logger.critical("audit_chain_broken", extra={"seq": event.seq, "check": "payload"})
                raise AuditChainBrokenError(str(event.id), recomputed_payload_hash, event.payload_hash)

            expected_hash = hash_audit_event(
                entity_type=event.entity_type,
                entity_id=str(event.entity_id),
                action=AuditAction(event.action).value,
                payload_hash=event.payload_hash,
                prev_hash=event.prev_hash,
            )
            if event.hash != expected_hash:
                logger.critical("audit_chain_broken", extra={"seq": event.seq, "check": "hash"})
                raise AuditChainBrokenError(str(event.id), expected_hash, event.hash)

            previous_hash = event.hash

        logger.info("audit_chain_validated", extra={"event_count": len(events)})
        return True

    def get_trace(self, entity_type: str, entity_id: UUID) -> AuditTrace:
        """Complete audit trace for an entity in chain order."""
        events = self._session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.entity_type == entity_type,
                AuditEvent.entity_id == entity_id,
            )
            .order_by(AuditEvent.seq)
        ).scalars().all()

        entries = tuple(
            AuditTraceEntry(
                seq=event.seq,
                action=AuditAction(event.action),
                occurred_at=event.occurred_at,
                actor_id=event.actor_id,
                payload=event.payload or {},
                hash=event.hash,
            )
            for event in events
        )
        return AuditTrace(entity_type=entity_type, entity_id=entity_id, entries=entries)

    def count_events(self, action: AuditAction | None = None) -> int:
        query = select(AuditEvent.id)
        if action is not None:
            query = query.where(AuditEvent.action == action.value)
        return len(self._session.execute(query).all())
