"""Inventory ledger model."""
from enum import Enum
from sqlalchemy import Column, String, Text, ForeignKey, Integer
from sqlalchemy.orm import relationship
import uuid

from exchange_engine.database import Base, TimestampMixin
from exchange_engine.db_types import UUIDType


class InventoryTransactionType(str, Enum):
    """Inventory transaction type enum."""
    SALE = "sale"
    RETURN = "return"  # Customer return put back on the shelf
    DAMAGE = "damage"  # Audit-only record for units that do not go back to stock
    ADJUSTMENT = "adjustment"


class InventoryTransaction(Base, TimestampMixin):
    """Stock movement history/ledger."""

    __tablename__ = "inventory_transactions"

    id = Column(UUIDType, primary_key=True, default=uuid.uuid4)

    product_id = Column(UUIDType, ForeignKey("products.id"), nullable=False, index=True)
    transaction_type = Column(
        String(30), nullable=False, index=True,
        comment="sale, return, damage, adjustment"
    )

    # Quantity
    quantity = Column(Integer, nullable=False)  # Positive for in, negative for out, 0 for audit

    # Stock levels around the movement
    qty_before = Column(Integer, nullable=False, default=0)
    qty_after = Column(Integer, nullable=False, default=0)
    reserved_before = Column(Integer, nullable=False, default=0)
    reserved_after = Column(Integer, nullable=False, default=0)

    # Related documents
    reference_type = Column(String(50))  # order, return
    reference_id = Column(UUIDType)
    reference_number = Column(String(100))

    reason = Column(Text)

    # User
    created_by = Column(UUIDType)

    product = relationship("Product")

    def __repr__(self):
        return f"<InventoryTransaction {self.transaction_type} {self.quantity}>"
