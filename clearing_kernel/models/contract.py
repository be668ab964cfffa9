"""
Contract -- bilateral supply agreement between two parties.

``party_a`` is the selling side (issues invoices), ``party_b`` the buying
side.  Currency is fixed at registration and never changes.
"""

from datetime import date
from uuid import UUID

from sqlalchemy import JSON, CheckConstraint, Date, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clearing_kernel.db.base import TrackedBase, UUIDString
from clearing_kernel.domain.dtos import ContractInfo
from clearing_kernel.models.party import Party


class Contract(TrackedBase):
    """
    Supply contract.

    Guarantees:
        - ``start_date <= end_date`` when an end date is present.
        - ``currency`` is a 3-letter ISO 4217 code.
    """

    __tablename__ = "contracts"

    __table_args__ = (
        Index("idx_contract_ref", "contract_ref", unique=True),
        CheckConstraint(
            "end_date IS NULL OR start_date <= end_date",
            name="ck_contract_date_order",
        ),
    )

    contract_ref: Mapped[str] = mapped_column(String(50), nullable=False)
    party_a_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("parties.id"), nullable=False
    )
    party_b_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("parties.id"), nullable=False
    )
    contract_type: Mapped[str] = mapped_column(String(20), nullable=False)
    pricing_formula: Mapped[str] = mapped_column(Text, nullable=False, default="")
    metering_points: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    sla_thresholds: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    party_a: Mapped[Party] = relationship(foreign_keys=[party_a_id], lazy="selectin")
    party_b: Mapped[Party] = relationship(foreign_keys=[party_b_id], lazy="selectin")

    def __repr__(self) -> str:
        return f"<Contract {self.contract_ref}>"

    def to_dto(self) -> ContractInfo:
        return ContractInfo(
            contract_id=self.id,
            contract_ref=self.contract_ref,
            party_a_id=self.party_a_id,
            party_b_id=self.party_b_id,
            contract_type=self.contract_type,
            currency=self.currency,
            start_date=self.start_date,
            end_date=self.end_date,
            pricing_formula=self.pricing_formula,
            metering_points=tuple(self.metering_points or ()),
            sla_thresholds=dict(self.sla_thresholds or {}),
        )
