"""
EscrowService -- pooled settlement funds and time-boxed reservations.

Responsibility:
    Holds the per-currency escrow pools that settlement payments are drawn
    from.  A batch reserves its total net amount before any leg executes;
    the reservation is released exactly once, either settled (funds paid
    out) or returned (rollback).  Reservations that outlive their TTL are
    expired by ``expire_reservations``.

Architecture position:
    Kernel > Services -- the Escrow/Funds collaborator of the settlement
    orchestrator.

Invariants enforced:
    - ``0 <= reserved_amount <= balance`` on every account.
    - A reservation is ACTIVE until released or expired; a second release
      raises ``ReservationAlreadyReleasedError``.
    - Insufficient funds is a result, not an exception: the orchestrator
      turns it into a RESERVATION_FAILED outcome without touching the batch.

Failure modes:
    - DuplicateReservationError when a reference is reused.
    - ReservationNotFoundError / ReservationAlreadyReleasedError on release.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from clearing_kernel.domain.clock import Clock, SystemClock
from clearing_kernel.domain.values import ReservationStatus
from clearing_kernel.exceptions import (
    DuplicateReservationError,
    EscrowAccountNotFoundError,
    InsufficientEscrowFundsError,
    InvalidAmountError,
    ReservationAlreadyReleasedError,
    ReservationNotFoundError,
)
from clearing_kernel.logging_config import get_logger
from clearing_kernel.models.escrow import EscrowAccount, EscrowReservation
from clearing_kernel.services.auditor_service import AuditorService

logger = get_logger("services.escrow")


@dataclass(frozen=True)
class EscrowBalance:
    currency: str
    balance: Decimal
    reserved: Decimal

    @property
    def available(self) -> Decimal:
        return self.balance - self.reserved


@dataclass(frozen=True)
class ReservationResult:
    """Outcome of a reservation attempt."""

    success: bool
    reference: str
    reservation_id: UUID | None = None
    expires_at: datetime | None = None
    error_code: str | None = None
    message: str = ""


class EscrowService:
    """
    Escrow pools and reservations.

    Non-goals:
        - Does NOT call ``session.commit()``.
        - Does NOT move money between parties; settlement payments do.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        clock: Clock | None = None,
    ):
        self._session = session
        self._auditor = auditor
        self._clock = clock or SystemClock()

    def _lock_account(self, currency: str) -> EscrowAccount:
        account = self._session.execute(
            select(EscrowAccount)
            .where(EscrowAccount.currency == currency)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if account is None:
            raise EscrowAccountNotFoundError(currency)
        return account

    def _lock_reservation(self, reference: str) -> EscrowReservation:
        reservation = self._session.execute(
            select(EscrowReservation)
            .where(EscrowReservation.reference == reference)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if reservation is None:
            raise ReservationNotFoundError(reference)
        return reservation

    def open_account(self, currency: str, actor_id: UUID) -> EscrowBalance:
        account = EscrowAccount(
            currency=currency,
            balance=Decimal("0"),
            reserved_amount=Decimal("0"),
            created_by_id=actor_id,
        )
        self._session.add(account)
        self._session.flush()
        logger.info("escrow_account_opened", extra={"currency": currency})
        return self.get_balance(currency)

    def fund_account(self, currency: str, amount: Decimal, actor_id: UUID) -> EscrowBalance:
        if amount <= 0:
            raise InvalidAmountError("escrow funding", amount, "must be > 0")
        account = self._lock_account(currency)
        old_balance = account.balance
        account.balance = old_balance + amount
        account.updated_by_id = actor_id
        self._session.flush()
        self._auditor.record_escrow_funded(account.id, currency, old_balance, account.balance, actor_id)
        return self.get_balance(currency)

    def get_balance(self, currency: str) -> EscrowBalance:
        account = self._session.execute(
            select(EscrowAccount).where(EscrowAccount.currency == currency)
        ).scalar_one_or_none()
        if account is None:
            raise EscrowAccountNotFoundError(currency)
        return EscrowBalance(
            currency=currency,
            balance=account.balance,
            reserved=account.reserved_amount,
        )

    def reserve(
        self,
        amount: Decimal,
        currency: str,
        reference: str,
        ttl: timedelta,
        actor_id: UUID,
    ) -> ReservationResult:
        """
        Reserve ``amount`` for ``ttl``.

        Returns:
            ReservationResult with ``success=False`` and an error code when
            the account is missing or has insufficient available funds.

        Raises:
            DuplicateReservationError: If ``reference`` was used before.
        """
        existing = self._session.execute(
            select(EscrowReservation.id).where(EscrowReservation.reference == reference)
        ).first()
        if existing is not None:
            raise DuplicateReservationError(reference)

        try:
            account = self._lock_account(currency)
            if amount > account.available:
                raise InsufficientEscrowFundsError(currency, amount, account.available)
        except (EscrowAccountNotFoundError, InsufficientEscrowFundsError) as exc:
            logger.warning(
                "escrow_reservation_failed",
                extra={"reference": reference, "amount": str(amount), "error_code": exc.code},
            )
            return ReservationResult(
                success=False,
                reference=reference,
                error_code=exc.code,
                message=str(exc),
            )

        expires_at = self._clock.now() + ttl
        reservation = EscrowReservation(
            reference=reference,
            currency=currency,
            amount=amount,
            status=ReservationStatus.ACTIVE.value,
            expires_at=expires_at,
            created_by_id=actor_id,
        )
        account.reserved_amount = account.reserved_amount + amount
        self._session.add(reservation)
        self._session.flush()

        self._auditor.record_escrow_reserved(reservation.id, reference, amount, expires_at, actor_id)
        logger.info(
            "escrow_reserved",
            extra={"reference": reference, "amount": str(amount), "expires_at": expires_at},
        )
        return ReservationResult(
            success=True,
            reference=reference,
            reservation_id=reservation.id,
            expires_at=expires_at,
        )

    def is_expired(self, reference: str) -> bool:
        """True once the reservation's lifetime has elapsed or it was expired."""
        reservation = self._lock_reservation(reference)
        if ReservationStatus(reservation.status) == ReservationStatus.EXPIRED:
            return True
        return self._clock.now() >= reservation.expires_at

    def release(self, reference: str, actor_id: UUID, *, settled: bool = False) -> None:
        """
        Release a reservation exactly once.

        ``settled=True`` means the reserved funds were paid out by the
        batch and leave the pool; otherwise they return to available.

        Raises:
            ReservationNotFoundError, ReservationAlreadyReleasedError.
        """
        reservation = self._lock_reservation(reference)
        status = ReservationStatus(reservation.status)
        if status != ReservationStatus.ACTIVE:
            raise ReservationAlreadyReleasedError(reference, status.value)

        account = self._lock_account(reservation.currency)
        account.reserved_amount = account.reserved_amount - reservation.amount
        if settled:
            account.balance = account.balance - reservation.amount
        reservation.status = ReservationStatus.RELEASED.value
        reservation.released_at = self._clock.now()
        self._session.flush()

        self._auditor.record_escrow_released(reservation.id, reference, settled, actor_id)
        logger.info(
            "escrow_released",
            extra={"reference": reference, "amount": str(reservation.amount), "settled": settled},
        )

    def expire_reservations(self, actor_id: UUID) -> list[str]:
        """Expire every ACTIVE reservation past its deadline; returns references."""
        now = self._clock.now()
        stale = self._session.execute(
            select(EscrowReservation)
            .where(
                EscrowReservation.status == ReservationStatus.ACTIVE.value,
                EscrowReservation.expires_at <= now,
            )
            .order_by(EscrowReservation.expires_at, EscrowReservation.reference)
            .with_for_update()
        ).scalars().all()

        expired: list[str] = []
        for reservation in stale:
            account = self._lock_account(reservation.currency)
            account.reserved_amount = account.reserved_amount - reservation.amount
            reservation.status = ReservationStatus.EXPIRED.value
            self._session.flush()
            self._auditor.record_escrow_expired(reservation.id, reservation.reference, actor_id)
            expired.append(reservation.reference)

        if expired:
            logger.warning("escrow_reservations_expired", extra={"references": expired})
        return expired
