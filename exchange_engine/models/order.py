import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Text, Numeric, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from exchange_engine.database import Base
from exchange_engine.db_types import JSONType, UUIDType


class OrderStatus(str, Enum):
    """Order status enumeration."""
    DRAFT = "draft"
    ORDER_PROCESSING = "order_processing"  # Created, awaiting settlement
    PAID = "paid"
    FULFILLED = "fulfilled"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OrderSource(str, Enum):
    """Where the order was created."""
    POS = "pos"
    QUOTE = "quote"
    WEBSITE = "website"
    EXCHANGE = "exchange"


class PaymentMethod(str, Enum):
    """Payment method enumeration."""
    CASH = "cash"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    EXCHANGE_CREDIT = "exchange_credit"  # Value carried over from returned items
    STORE_CREDIT = "store_credit"
    ORIGINAL_PAYMENT = "original_payment"


class PaymentStatus(str, Enum):
    """Payment status enumeration."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Order(Base):
    """
    Sales order.

    The exchange engine reads original orders under a row lock and creates
    new orders with source="exchange". Every amount is in cents.
    """
    __tablename__ = "orders"
    __table_args__ = (
        Index('ix_order_status_created', 'status', 'created_at'),
        Index('ix_order_customer_created', 'customer_id', 'created_at'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    # Order Identification
    order_number: Mapped[str] = mapped_column(
        String(30),
        unique=True,
        nullable=False,
        index=True
    )
    source: Mapped[str] = mapped_column(
        String(30),
        default=OrderSource.POS.value,
        nullable=False,
        comment="pos, quote, website, exchange"
    )

    # Status
    status: Mapped[str] = mapped_column(
        String(50),
        default=OrderStatus.DRAFT.value,
        nullable=False,
        index=True,
        comment="draft, order_processing, paid, fulfilled, delivered, completed, cancelled"
    )

    # Customer (owned by the customer subsystem; snapshot kept for history)
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    customer_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Tax
    tax_jurisdiction: Mapped[Optional[str]] = mapped_column(
        String(5),
        nullable=True,
        comment="Province code, e.g. ON, BC, QC"
    )
    tax_exempt: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    tax_exempt_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    fulfillment_type: Mapped[Optional[str]] = mapped_column(
        String(30),
        nullable=True,
        comment="pickup, delivery, shipping"
    )

    # Pricing (all in cents)
    subtotal_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tax_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    hst_rate: Mapped[Decimal] = mapped_column(Numeric(6, 5), default=Decimal("0"), nullable=False)
    gst_rate: Mapped[Decimal] = mapped_column(Numeric(6, 5), default=Decimal("0"), nullable=False)
    pst_rate: Mapped[Decimal] = mapped_column(Numeric(6, 5), default=Decimal("0"), nullable=False)
    hst_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    gst_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    pst_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_cents: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Final amount to be paid"
    )
    amount_paid_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Exchange linkage
    is_exchange: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    original_return_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("return_records.id", ondelete="SET NULL", use_alter=True, name="fk_orders_original_return"),
        nullable=True,
        index=True,
        comment="Return record this exchange order was created from"
    )
    order_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONType, nullable=True)

    # Notes
    internal_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Tracking
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    # Relationships
    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.sort_order"
    )
    payments: Mapped[List["OrderPayment"]] = relationship(
        "OrderPayment",
        back_populates="order",
        cascade="all, delete-orphan"
    )

    @property
    def balance_due_cents(self) -> int:
        return self.total_cents - self.amount_paid_cents

    def __repr__(self) -> str:
        return f"<Order(number='{self.order_number}', status='{self.status}')>"


class OrderItem(Base):
    """Order line item with a product snapshot. Immutable once written."""
    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    product_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("products.id", ondelete="SET NULL"),
        nullable=True
    )

    # Product snapshot (at time of order)
    product_name: Mapped[str] = mapped_column(String(300), nullable=False)
    product_sku: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Quantity and pricing (cents)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_cost_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    line_total_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    taxable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    order: Mapped["Order"] = relationship("Order", back_populates="items")

    def __repr__(self) -> str:
        return f"<OrderItem(sku='{self.product_sku}', qty={self.quantity})>"


class OrderPayment(Base):
    """Payment (or refund, when negative) recorded against an order."""
    __tablename__ = "order_payments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    payment_method: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        comment="cash, credit_card, debit_card, exchange_credit, original_payment"
    )
    amount_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Signed; refunds are negative"
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default=PaymentStatus.COMPLETED.value,
        nullable=False
    )
    is_refund: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    refund_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Tender details
    card_last_four: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    card_brand: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    authorization_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    processor_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    cash_tendered_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    change_given_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    processed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    order: Mapped["Order"] = relationship("Order", back_populates="payments")

    def __repr__(self) -> str:
        return f"<OrderPayment(method='{self.payment_method}', amount={self.amount_cents})>"
