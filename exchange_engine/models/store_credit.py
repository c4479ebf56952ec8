import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import String, DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from exchange_engine.database import Base
from exchange_engine.db_types import UUIDType


class StoreCreditSourceType(str, Enum):
    REFUND = "refund"
    GOODWILL = "goodwill"


class StoreCreditTransactionType(str, Enum):
    ISSUE = "issue"
    REDEEM = "redeem"
    ADJUST = "adjust"


class StoreCredit(Base):
    """Redeemable balance issued instead of a cash refund."""
    __tablename__ = "store_credits"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    code: Mapped[str] = mapped_column(
        String(20),
        unique=True,
        nullable=False,
        index=True,
        comment="Human-readable code, e.g. SC-7KQ2M"
    )
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True, index=True)

    original_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_balance_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    # Source
    source_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=StoreCreditSourceType.REFUND.value
    )
    source_return_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("return_records.id", ondelete="SET NULL"),
        nullable=True
    )

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    issued_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    transactions = relationship(
        "StoreCreditTransaction",
        back_populates="store_credit",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<StoreCredit {self.code} {self.current_balance_cents}>"


class StoreCreditTransaction(Base):
    """Store credit ledger entry."""
    __tablename__ = "store_credit_transactions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    store_credit_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("store_credits.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    performed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    store_credit = relationship("StoreCredit", back_populates="transactions")

    def __repr__(self):
        return f"<StoreCreditTransaction {self.transaction_type} {self.amount_cents}>"
