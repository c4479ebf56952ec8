"""Inventory Service for stock movements caused by returns and sales."""
from typing import Optional
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from exchange_engine.config import settings
from exchange_engine.core.exceptions import NotFoundError, ValidationError
from exchange_engine.models.inventory import InventoryTransaction, InventoryTransactionType
from exchange_engine.models.product import Product


class InventoryService:
    """Service for product stock levels and the inventory ledger."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== STOCK LEVEL METHODS ====================

    async def _adjust_on_hand(
        self,
        product_id: uuid.UUID,
        delta: int,
        min_available: Optional[int] = None,
    ) -> Optional[tuple[int, int]]:
        """
        Atomically change qty_on_hand.

        With ``min_available`` the change only applies while
        qty_on_hand - qty_reserved >= min_available; the check and the write
        are one statement, so a concurrent sale cannot slip in between.

        Returns:
            (qty_on_hand after, qty_reserved), or None when the guard failed
            or the product is missing

        Raises:
            NotFoundError: If the product does not exist and no guard was given
        """
        stmt = update(Product).where(Product.id == product_id)
        if min_available is not None:
            stmt = stmt.where(Product.qty_on_hand - Product.qty_reserved >= min_available)

        result = await self.db.execute(
            stmt
            .values(qty_on_hand=Product.qty_on_hand + delta)
            .returning(Product.qty_on_hand, Product.qty_reserved)
            .execution_options(synchronize_session=False)
        )
        row = result.one_or_none()
        if row is None:
            if min_available is None:
                raise NotFoundError(f"Product {product_id} not found")
            return None
        return row[0], row[1]

    async def _current_levels(self, product_id: uuid.UUID) -> tuple[int, int]:
        result = await self.db.execute(
            select(Product.qty_on_hand, Product.qty_reserved).where(Product.id == product_id)
        )
        row = result.one_or_none()
        if row is None:
            raise NotFoundError(f"Product {product_id} not found")
        return row[0], row[1]

    # ==================== MOVEMENT METHODS ====================

    async def restore_inventory(
        self,
        product_id: uuid.UUID,
        quantity: int,
        reason: str,
        reference_type: str,
        reference_id: uuid.UUID,
        reference_number: Optional[str] = None,
        user_id: Optional[uuid.UUID] = None,
    ) -> InventoryTransaction:
        """Put returned units back on hand and record a `return` movement."""
        qty_after, reserved = await self._adjust_on_hand(product_id, quantity)
        return await self._create_transaction(
            transaction_type=InventoryTransactionType.RETURN,
            product_id=product_id,
            quantity=quantity,
            qty_before=qty_after - quantity,
            qty_after=qty_after,
            reserved=reserved,
            reference_type=reference_type,
            reference_id=reference_id,
            reference_number=reference_number,
            reason=reason,
            created_by=user_id,
        )

    async def deduct_for_sale(
        self,
        product: Product,
        quantity: int,
        reference_id: uuid.UUID,
        reference_number: str,
        user_id: Optional[uuid.UUID] = None,
    ) -> Optional[InventoryTransaction]:
        """
        Take sold units off hand and record a `sale` movement.

        Products that do not track inventory are skipped (returns None).

        Raises:
            ValidationError: If available stock is insufficient and neither the
                product nor configuration allows going negative
        """
        if not product.track_inventory:
            return None

        may_go_negative = product.allow_backorder or settings.ALLOW_NEGATIVE_STOCK
        levels = await self._adjust_on_hand(
            product.id,
            -quantity,
            min_available=None if may_go_negative else quantity,
        )
        if levels is None:
            qty_on_hand, qty_reserved = await self._current_levels(product.id)
            raise ValidationError(
                f"Insufficient stock for '{product.name}': "
                f"{qty_on_hand - qty_reserved} available, {quantity} requested"
            )

        qty_after, reserved = levels
        return await self._create_transaction(
            transaction_type=InventoryTransactionType.SALE,
            product_id=product.id,
            quantity=-quantity,
            qty_before=qty_after + quantity,
            qty_after=qty_after,
            reserved=reserved,
            reference_type="order",
            reference_id=reference_id,
            reference_number=reference_number,
            reason=f"Exchange sale: {reference_number}",
            created_by=user_id,
        )

    async def record_disposal_audit(
        self,
        product_id: uuid.UUID,
        reason: str,
        reference_id: uuid.UUID,
        reference_number: str,
        user_id: Optional[uuid.UUID] = None,
    ) -> InventoryTransaction:
        """Audit-only `damage` entry: on-hand is unchanged."""
        qty_on_hand, qty_reserved = await self._current_levels(product_id)
        return await self._create_transaction(
            transaction_type=InventoryTransactionType.DAMAGE,
            product_id=product_id,
            quantity=0,
            qty_before=qty_on_hand,
            qty_after=qty_on_hand,
            reserved=qty_reserved,
            reference_type="return",
            reference_id=reference_id,
            reference_number=reference_number,
            reason=reason,
            created_by=user_id,
        )

    async def _create_transaction(
        self,
        transaction_type: InventoryTransactionType,
        product_id: uuid.UUID,
        quantity: int,
        qty_before: int,
        qty_after: int,
        reserved: int,
        reference_type: Optional[str] = None,
        reference_id: Optional[uuid.UUID] = None,
        reference_number: Optional[str] = None,
        reason: Optional[str] = None,
        created_by: Optional[uuid.UUID] = None,
    ) -> InventoryTransaction:
        """Create an inventory ledger record."""
        transaction = InventoryTransaction(
            product_id=product_id,
            transaction_type=transaction_type.value,
            quantity=quantity,
            qty_before=qty_before,
            qty_after=qty_after,
            reserved_before=reserved,
            reserved_after=reserved,
            reference_type=reference_type,
            reference_id=reference_id,
            reference_number=reference_number,
            reason=reason,
            created_by=created_by,
        )
        self.db.add(transaction)
        await self.db.flush()
        return transaction
