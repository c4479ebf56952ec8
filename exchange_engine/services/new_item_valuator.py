"""Prices the replacement items of an exchange against the live catalog."""
import uuid
from dataclasses import dataclass, field
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from exchange_engine.core.exceptions import NotFoundError, ValidationError
from exchange_engine.core.money import to_cents
from exchange_engine.models.product import Product
from exchange_engine.services.catalog_service import CatalogService


@dataclass
class ValidatedNewLine:
    product: Product
    quantity: int
    unit_price_cents: int
    unit_cost_cents: int
    line_total_cents: int
    taxable: bool = True

    @property
    def product_id(self) -> uuid.UUID:
        return self.product.id


@dataclass
class NewItemValuation:
    lines: list[ValidatedNewLine] = field(default_factory=list)
    subtotal_cents: int = 0
    taxable_subtotal_cents: int = 0


class NewItemValuator:

    def __init__(self, db: AsyncSession):
        self.db = db
        self.catalog = CatalogService(db)

    async def valuate(self, new_items: Sequence) -> NewItemValuation:
        """
        Validate and price new lines.

        ``unit_price`` on an input line is an override already in cents;
        otherwise the catalog price is converted (half-up).
        """
        valuation = NewItemValuation()

        for item in new_items:
            if not item.product_id:
                raise ValidationError("Each new item requires a product_id")
            if item.quantity is None or item.quantity < 1:
                raise ValidationError(f"Invalid quantity for product {item.product_id}: must be at least 1")

            override: Optional[int] = item.unit_price
            if override is not None and override < 0:
                raise ValidationError(f"Unit price for product {item.product_id} cannot be negative")

            product = await self.catalog.lookup_product(item.product_id)
            if product is None:
                raise NotFoundError(f"Product {item.product_id} not found")

            unit_price = override if override is not None else to_cents(product.price)
            unit_cost = to_cents(product.cost)
            line_total = unit_price * item.quantity

            valuation.lines.append(ValidatedNewLine(
                product=product,
                quantity=item.quantity,
                unit_price_cents=unit_price,
                unit_cost_cents=unit_cost,
                line_total_cents=line_total,
                taxable=product.taxable,
            ))
            valuation.subtotal_cents += line_total
            if product.taxable:
                valuation.taxable_subtotal_cents += line_total

        return valuation
