from exchange_engine.models.order import (
    Order,
    OrderItem,
    OrderPayment,
    OrderStatus,
    OrderSource,
    PaymentMethod,
    PaymentStatus,
)
from exchange_engine.models.product import Product
from exchange_engine.models.inventory import InventoryTransaction, InventoryTransactionType
from exchange_engine.models.returns import (
    ReturnRecord,
    ReturnLineItem,
    ReturnReasonCode,
    ReturnStatus,
    ReturnType,
    ItemCondition,
    Disposition,
    INACTIVE_RETURN_STATUSES,
)
from exchange_engine.models.store_credit import (
    StoreCredit,
    StoreCreditTransaction,
    StoreCreditSourceType,
    StoreCreditTransactionType,
)
from exchange_engine.models.document_sequence import DocumentSequence

__all__ = [
    # Order
    "Order",
    "OrderItem",
    "OrderPayment",
    "OrderStatus",
    "OrderSource",
    "PaymentMethod",
    "PaymentStatus",
    # Catalog / Inventory
    "Product",
    "InventoryTransaction",
    "InventoryTransactionType",
    # Returns
    "ReturnRecord",
    "ReturnLineItem",
    "ReturnReasonCode",
    "ReturnStatus",
    "ReturnType",
    "ItemCondition",
    "Disposition",
    "INACTIVE_RETURN_STATUSES",
    # Store credit
    "StoreCredit",
    "StoreCreditTransaction",
    "StoreCreditSourceType",
    "StoreCreditTransactionType",
    # Document Sequence
    "DocumentSequence",
]
