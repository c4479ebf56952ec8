"""
Document Sequence Model for Atomic Number Generation

One row per (prefix, day). Numbers restart at 00001 each day.

DOCUMENT FORMATS:
    RTN: RTN-20261016-00001  (Return)
    EXC: EXC-20261016-00001  (Exchange order)
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Integer, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from exchange_engine.database import Base
from exchange_engine.db_types import UUIDType


class DocumentSequence(Base):
    """
    Per-prefix daily counter.

    Example:
        prefix = "EXC"
        sequence_date = "20261016"
        current_number = 42
        → Next number: EXC-20261016-00043
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        UniqueConstraint(
            "prefix", "sequence_date",
            name="uq_document_prefix_date"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    prefix: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        index=True,
        comment="RTN, EXC"
    )
    sequence_date: Mapped[str] = mapped_column(
        String(8),
        nullable=False,
        comment="YYYYMMDD (UTC)"
    )

    # Sequence Counter
    current_number: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
        comment="Last used sequence number"
    )
    padding_length: Mapped[int] = mapped_column(
        Integer,
        default=5,
        nullable=False,
        comment="Zero padding for sequence (5 = 00001)"
    )

    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=True
    )

    @staticmethod
    def format_number(prefix: str, sequence_date: str, number: int, padding_length: int = 5) -> str:
        return f"{prefix}-{sequence_date}-{str(number).zfill(padding_length)}"

    @staticmethod
    def today() -> str:
        return datetime.now(timezone.utc).strftime("%Y%m%d")

    def __repr__(self) -> str:
        return f"<DocumentSequence({self.prefix} {self.sequence_date} #{self.current_number})>"
