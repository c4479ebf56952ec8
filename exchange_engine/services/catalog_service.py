import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from exchange_engine.models.product import Product


class CatalogService:
    """Read access to the product catalog."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def lookup_product(self, product_id: uuid.UUID) -> Optional[Product]:
        result = await self.db.execute(
            select(Product).where(Product.id == product_id)
        )
        return result.scalar_one_or_none()
