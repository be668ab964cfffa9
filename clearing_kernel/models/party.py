"""
Party -- a market participant that issues or receives invoices.

Parties are never deleted once they carry financial history; see
db/immutability.py.
"""

from sqlalchemy import Boolean, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from clearing_kernel.db.base import TrackedBase
from clearing_kernel.domain.dtos import PartyInfo
from clearing_kernel.domain.values import PartyRole


class Party(TrackedBase):
    """
    Counterparty master record.

    Guarantees:
        - ``code`` is unique (e.g. ``ECG``, ``VRA``).
        - ``role`` is one of ``PartyRole``.
    """

    __tablename__ = "parties"

    __table_args__ = (
        Index("idx_party_code", "code", unique=True),
    )

    code: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    role: Mapped[PartyRole] = mapped_column(String(20), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Party {self.code} ({self.role})>"

    def to_dto(self) -> PartyInfo:
        return PartyInfo(
            party_id=self.id,
            code=self.code,
            name=self.name,
            role=PartyRole(self.role),
            is_active=self.is_active,
        )
