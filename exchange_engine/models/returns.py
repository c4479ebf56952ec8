"""
Return Record Models

A return record is the engine-owned side of an exchange: which items of
the original order came back, what they were worth, and where each unit
went afterwards.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional, List

from sqlalchemy import String, Boolean, DateTime, Integer, Text, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from exchange_engine.database import Base
from exchange_engine.db_types import UUIDType

if TYPE_CHECKING:
    from exchange_engine.models.order import Order, OrderItem


class ReturnStatus(str, Enum):
    """Return record status."""
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


# Line items under these statuses no longer count towards returned quantity
INACTIVE_RETURN_STATUSES = (ReturnStatus.REJECTED.value, ReturnStatus.CANCELLED.value)


class ReturnType(str, Enum):
    RETURN = "return"
    EXCHANGE = "exchange"


class ItemCondition(str, Enum):
    """Physical condition of a returned unit."""
    RESELLABLE = "resellable"
    DAMAGED = "damaged"
    DEFECTIVE = "defective"
    OTHER = "other"


class Disposition(str, Enum):
    """Where a returned unit goes after it is received."""
    RETURN_TO_STOCK = "return_to_stock"
    CLEARANCE = "clearance"
    RMA_VENDOR = "rma_vendor"
    DISPOSE = "dispose"


class ReturnReasonCode(Base):
    """Configured reasons a customer can give for a return."""
    __tablename__ = "return_reason_codes"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<ReturnReasonCode(code='{self.code}')>"


class ReturnRecord(Base):
    """Return header. Amounts are in cents."""
    __tablename__ = "return_records"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    return_number: Mapped[str] = mapped_column(
        String(50),
        unique=True,
        nullable=False,
        index=True
    )

    # Related Order
    original_order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id"),
        nullable=False,
        index=True
    )
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True, index=True)

    return_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ReturnType.RETURN.value,
        comment="return, exchange"
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ReturnStatus.PROCESSING.value,
        index=True,
        comment="processing, completed, rejected, cancelled"
    )

    # Value of returned items
    subtotal_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tax_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    refund_method: Mapped[Optional[str]] = mapped_column(
        String(30),
        nullable=True,
        comment="store_credit, cash, original_payment; only when a refund is owed"
    )

    # Exchange linkage
    exchange_order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="SET NULL"),
        nullable=True
    )

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    initiated_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)

    # Timestamps
    initiated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    # Relationships
    original_order: Mapped["Order"] = relationship("Order", foreign_keys=[original_order_id])
    exchange_order: Mapped[Optional["Order"]] = relationship("Order", foreign_keys=[exchange_order_id])
    items: Mapped[List["ReturnLineItem"]] = relationship(
        "ReturnLineItem",
        back_populates="return_record",
        cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<ReturnRecord(number='{self.return_number}', status='{self.status}')>"


class ReturnLineItem(Base):
    """A single returned order line."""
    __tablename__ = "return_line_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    return_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("return_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    original_order_item_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("order_items.id"),
        nullable=False,
        index=True
    )
    product_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("products.id", ondelete="SET NULL"),
        nullable=True
    )

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    refund_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    reason_code_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("return_reason_codes.id"),
        nullable=True
    )
    reason_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    item_condition: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ItemCondition.RESELLABLE.value,
        comment="resellable, damaged, defective, other"
    )
    disposition: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="return_to_stock, clearance, rma_vendor, dispose"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    return_record: Mapped["ReturnRecord"] = relationship("ReturnRecord", back_populates="items")
    order_item: Mapped["OrderItem"] = relationship("OrderItem")
    reason_code: Mapped[Optional["ReturnReasonCode"]] = relationship("ReturnReasonCode")

    def __repr__(self) -> str:
        return f"<ReturnLineItem(qty={self.quantity}, disposition='{self.disposition}')>"
