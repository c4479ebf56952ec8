"""
Inventory Disposition Gateway

Routes returned units to restock/clearance/vendor-RMA/disposal and deducts
stock for newly sold units.

External side effects fall into two categories:

* advisory: run inside a SAVEPOINT. A failure is logged, the savepoint is
  rolled back and the exchange carries on.
* mandatory: a failure propagates and aborts the whole exchange.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from exchange_engine.core.exceptions import ExchangeError
from exchange_engine.models.inventory import InventoryTransaction
from exchange_engine.models.returns import Disposition, ReturnRecord
from exchange_engine.services.inventory_service import InventoryService
from exchange_engine.services.new_item_valuator import ValidatedNewLine
from exchange_engine.services.return_valuator import ValidatedReturnLine

logger = logging.getLogger(__name__)

RESTOCKABLE_DISPOSITIONS = (Disposition.RETURN_TO_STOCK, Disposition.CLEARANCE)


class DispositionGateway:

    def __init__(self, db: AsyncSession, inventory: Optional[InventoryService] = None):
        self.db = db
        self.inventory = inventory or InventoryService(db)

    # ==================== RETURN LEG ====================

    async def process_return_line(
        self,
        line: ValidatedReturnLine,
        return_record: ReturnRecord,
        user_id: Optional[uuid.UUID],
    ) -> Optional[InventoryTransaction]:
        """
        Apply the disposition already derived for a returned line.

        Returns the inventory transaction written, or None when a tolerated
        restore failure left stock untouched (or the line has no product).
        """
        if line.product_id is None:
            logger.warning(
                f"Return {return_record.return_number}: order item {line.order_item.id} "
                f"has no product, skipping inventory"
            )
            return None

        if line.disposition in RESTOCKABLE_DISPOSITIONS:
            return await self._restore_advisory(line, return_record, user_id)

        # rma_vendor / dispose: audit only, never tolerated
        return await self.inventory.record_disposal_audit(
            product_id=line.product_id,
            reason=f"Exchange {line.disposition.value}: {return_record.return_number}",
            reference_id=return_record.id,
            reference_number=return_record.return_number,
            user_id=user_id,
        )

    async def _restore_advisory(
        self,
        line: ValidatedReturnLine,
        return_record: ReturnRecord,
        user_id: Optional[uuid.UUID],
    ) -> Optional[InventoryTransaction]:
        savepoint = await self.db.begin_nested()
        try:
            transaction = await self.inventory.restore_inventory(
                product_id=line.product_id,
                quantity=line.quantity,
                reason=f"Exchange return: {return_record.return_number}",
                reference_type="return",
                reference_id=return_record.id,
                reference_number=return_record.return_number,
                user_id=user_id,
            )
        except (SQLAlchemyError, ExchangeError):
            await savepoint.rollback()
            logger.exception(
                f"Inventory restore failed for product {line.product_id} "
                f"on return {return_record.return_number}; continuing exchange"
            )
            return None
        await savepoint.commit()
        return transaction

    # ==================== NEW-ITEM LEG ====================

    async def process_sale_line(
        self,
        line: ValidatedNewLine,
        order_id: uuid.UUID,
        order_number: str,
        user_id: Optional[uuid.UUID],
    ) -> Optional[InventoryTransaction]:
        """Deduct sold units. Mandatory: insufficient stock aborts the exchange."""
        return await self.inventory.deduct_for_sale(
            product=line.product,
            quantity=line.quantity,
            reference_id=order_id,
            reference_number=order_number,
            user_id=user_id,
        )
