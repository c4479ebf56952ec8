"""
Pydantic schemas for exchanges.

Monetary fields are integer cents; decimal amounts are derived display
fields only.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from uuid import UUID

from pydantic import AliasChoices, Field, computed_field

from exchange_engine.core.money import from_cents
from exchange_engine.schemas.base import BaseCreateSchema, BaseResponseSchema, MoneyBreakdown, OptionalUUID


# ==================== Requests ====================

class ExchangeReturnItem(BaseCreateSchema):
    """A line of the original order being brought back."""
    original_order_item_id: UUID = Field(
        ...,
        validation_alias=AliasChoices("original_order_item_id", "order_item_id"),
    )
    quantity: int
    reason_code_id: OptionalUUID = None
    reason_notes: Optional[str] = Field(None, max_length=1000)
    item_condition: Optional[str] = Field(
        None,
        max_length=20,
        description="resellable (default), damaged, defective, other",
    )


class ExchangeNewItem(BaseCreateSchema):
    """A replacement item."""
    product_id: OptionalUUID = None
    quantity: int
    unit_price: Optional[int] = Field(None, description="Price override in cents")


class ExchangePaymentDetails(BaseCreateSchema):
    """Tender details recorded on the difference payment when the customer pays."""
    card_last_four: Optional[str] = Field(None, pattern=r"^\d{4}$")
    card_brand: Optional[str] = Field(None, max_length=30)
    authorization_code: Optional[str] = Field(None, max_length=100)
    processor_reference: Optional[str] = Field(None, max_length=100)
    cash_tendered_cents: Optional[int] = Field(None, ge=0)
    change_given_cents: Optional[int] = Field(None, ge=0)


class ExchangeCalculateRequest(BaseCreateSchema):
    original_order_id: OptionalUUID = None
    return_items: List[ExchangeReturnItem] = []
    new_items: List[ExchangeNewItem] = []


class ExchangeRequest(ExchangeCalculateRequest):
    payment_method: Optional[str] = Field(None, description="cash, credit_card, debit_card")
    refund_method: Optional[str] = Field(None, description="store_credit, cash, original_payment")
    payment_details: Optional[ExchangePaymentDetails] = None
    notes: Optional[str] = Field(None, max_length=2000)


# ==================== Responses ====================

class ItemSummary(BaseResponseSchema):
    product: str
    quantity: int
    value_cents: int


class SettlementResponse(BaseResponseSchema):
    type: str
    method: Optional[str] = None
    amount_cents: int = 0
    store_credit_code: Optional[str] = None

    @computed_field
    @property
    def amount(self) -> Decimal:
        return from_cents(self.amount_cents)


class ExchangeResponse(BaseResponseSchema):
    """Result of a processed exchange."""
    return_id: UUID
    return_number: str
    new_order_id: UUID
    new_order_number: str
    return_value: MoneyBreakdown
    new_order_value: MoneyBreakdown
    difference_cents: int
    payment: SettlementResponse
    items_returned: List[ItemSummary]
    items_new: List[ItemSummary]

    @computed_field
    @property
    def difference(self) -> Decimal:
        return from_cents(self.difference_cents)


class ExchangePreviewResponse(BaseResponseSchema):
    """What an exchange would cost, without writing anything."""
    original_order_id: UUID
    original_order_number: str
    tax_jurisdiction: str
    return_value: MoneyBreakdown
    new_order_value: MoneyBreakdown
    difference_cents: int
    settlement_type: str
    items_returned: List[ItemSummary]
    items_new: List[ItemSummary]

    @computed_field
    @property
    def difference(self) -> Decimal:
        return from_cents(self.difference_cents)


class OrderSummary(BaseResponseSchema):
    id: UUID
    order_number: str
    status: str
    total_cents: int


class CustomerSummary(BaseResponseSchema):
    id: OptionalUUID = None
    name: Optional[str] = None
    email: Optional[str] = None


class ReturnLineResponse(BaseResponseSchema):
    id: UUID
    original_order_item_id: UUID
    product_id: OptionalUUID = None
    product_name: Optional[str] = None
    quantity: int
    unit_price_cents: int
    refund_amount_cents: int
    reason: Optional[str] = None
    reason_notes: Optional[str] = None
    item_condition: str
    disposition: str


class NewItemResponse(BaseResponseSchema):
    product_id: OptionalUUID = None
    product_name: str
    product_sku: Optional[str] = None
    quantity: int
    unit_price_cents: int
    line_total_cents: int
    taxable: bool = True


class ExchangeDetailResponse(BaseResponseSchema):
    """An exchange as stored, keyed by its return record."""
    id: UUID
    return_number: str
    status: str
    refund_method: Optional[str] = None
    notes: Optional[str] = None
    original_order: OrderSummary
    exchange_order: Optional[OrderSummary] = None
    customer: CustomerSummary
    return_value_cents: int
    return_items: List[ReturnLineResponse]
    new_items: List[NewItemResponse]
    difference_cents: int
    created_at: datetime
    completed_at: Optional[datetime] = None
