"""
Return Valuator

Validates the items a customer is bringing back against the original order
and its return history, and prices them at the original unit price.
Everything here happens before any write.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional, Sequence

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from exchange_engine.core.exceptions import ValidationError
from exchange_engine.models.order import Order, OrderItem
from exchange_engine.models.returns import (
    Disposition,
    ItemCondition,
    ReturnLineItem,
    ReturnReasonCode,
    ReturnRecord,
    INACTIVE_RETURN_STATUSES,
)

logger = logging.getLogger(__name__)


DISPOSITION_BY_CONDITION = {
    ItemCondition.RESELLABLE.value: Disposition.RETURN_TO_STOCK,
    ItemCondition.DAMAGED.value: Disposition.CLEARANCE,
    ItemCondition.DEFECTIVE.value: Disposition.RMA_VENDOR,
}


def derive_disposition(item_condition: Optional[str]) -> Disposition:
    """Map a unit's condition to where it goes next. Unknown conditions are disposed."""
    return DISPOSITION_BY_CONDITION.get(item_condition, Disposition.DISPOSE)


@dataclass
class ValidatedReturnLine:
    order_item: OrderItem
    quantity: int
    unit_price_cents: int
    refund_amount_cents: int
    item_condition: str
    disposition: Disposition
    reason_code_id: Optional[uuid.UUID] = None
    reason_notes: Optional[str] = None

    @property
    def product_id(self) -> Optional[uuid.UUID]:
        return self.order_item.product_id


@dataclass
class ReturnValuation:
    lines: list[ValidatedReturnLine] = field(default_factory=list)
    subtotal_cents: int = 0
    # portion of the subtotal from lines that were taxed when sold
    taxable_subtotal_cents: int = 0


class ReturnValuator:
    """Prices the return leg of an exchange."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def valuate(self, order: Order, return_items: Sequence) -> ReturnValuation:
        """
        Validate and price return lines.

        Args:
            order: The (locked) original order
            return_items: Objects with original_order_item_id, quantity,
                reason_code_id, reason_notes and item_condition

        Returns:
            ReturnValuation with one validated line per input line

        Raises:
            ValidationError: On unknown items, bad quantities, over-returns,
                or unknown/inactive reason codes
        """
        item_ids = {ri.original_order_item_id for ri in return_items}

        # All referenced items, restricted to this order
        result = await self.db.execute(
            select(OrderItem).where(
                OrderItem.order_id == order.id,
                OrderItem.id.in_(item_ids),
            )
        )
        order_items = {item.id: item for item in result.scalars().all()}

        already_returned = await self._returned_quantities(list(order_items.keys()))
        reason_codes = await self._load_reason_codes(
            {ri.reason_code_id for ri in return_items if ri.reason_code_id}
        )

        valuation = ReturnValuation()
        claimed_in_request: dict[uuid.UUID, int] = {}

        for ri in return_items:
            order_item = order_items.get(ri.original_order_item_id)
            if order_item is None:
                raise ValidationError(
                    f"Order item {ri.original_order_item_id} not found on order {order.order_number}"
                )

            if ri.quantity < 1 or ri.quantity > order_item.quantity:
                raise ValidationError(
                    f"Invalid return quantity for '{order_item.product_name}': "
                    f"must be between 1 and {order_item.quantity}"
                )

            max_returnable = (
                order_item.quantity
                - already_returned.get(order_item.id, 0)
                - claimed_in_request.get(order_item.id, 0)
            )
            if ri.quantity > max_returnable:
                raise ValidationError(
                    f"Cannot return {ri.quantity} of '{order_item.product_name}': "
                    f"only {max(max_returnable, 0)} remaining"
                )

            if ri.reason_code_id:
                reason = reason_codes.get(ri.reason_code_id)
                if reason is None or not reason.is_active:
                    raise ValidationError(f"Invalid or inactive return reason code: {ri.reason_code_id}")

            claimed_in_request[order_item.id] = claimed_in_request.get(order_item.id, 0) + ri.quantity

            condition = ri.item_condition or ItemCondition.RESELLABLE.value
            refund_amount = order_item.unit_price_cents * ri.quantity

            valuation.lines.append(ValidatedReturnLine(
                order_item=order_item,
                quantity=ri.quantity,
                unit_price_cents=order_item.unit_price_cents,
                refund_amount_cents=refund_amount,
                item_condition=condition,
                disposition=derive_disposition(condition),
                reason_code_id=ri.reason_code_id,
                reason_notes=ri.reason_notes,
            ))
            valuation.subtotal_cents += refund_amount
            if order_item.taxable:
                valuation.taxable_subtotal_cents += refund_amount

        return valuation

    async def _returned_quantities(self, order_item_ids: list[uuid.UUID]) -> dict[uuid.UUID, int]:
        """Quantity already returned per item, ignoring rejected/cancelled returns."""
        if not order_item_ids:
            return {}
        result = await self.db.execute(
            select(
                ReturnLineItem.original_order_item_id,
                func.coalesce(func.sum(ReturnLineItem.quantity), 0),
            )
            .join(ReturnRecord, ReturnRecord.id == ReturnLineItem.return_id)
            .where(
                ReturnLineItem.original_order_item_id.in_(order_item_ids),
                ReturnRecord.status.notin_(INACTIVE_RETURN_STATUSES),
            )
            .group_by(ReturnLineItem.original_order_item_id)
        )
        return {item_id: int(qty) for item_id, qty in result.all()}

    async def _load_reason_codes(self, reason_code_ids: set) -> dict[uuid.UUID, ReturnReasonCode]:
        if not reason_code_ids:
            return {}
        result = await self.db.execute(
            select(ReturnReasonCode).where(ReturnReasonCode.id.in_(reason_code_ids))
        )
        return {code.id: code for code in result.scalars().all()}
