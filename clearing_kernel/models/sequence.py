"""SequenceCounter -- named monotonic counters behind business references."""

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from clearing_kernel.db.base import Base


class SequenceCounter(Base):
    """
    One row per named sequence.

    Row-level locking in SequenceService keeps values monotonic under
    concurrency.
    """

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
