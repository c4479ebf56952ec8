"""
Base Schema Classes for Pydantic Models

RULE: All response schemas that read from ORM models or service results
MUST inherit from BaseResponseSchema.
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, ConfigDict, computed_field

from exchange_engine.core.money import from_cents


class BaseResponseSchema(BaseModel):
    """
    Base class for response schemas built from ORM models or dataclasses.

    Usage:
        class OrderSummary(BaseResponseSchema):
            id: UUID
            order_number: str
    """
    model_config = ConfigDict(
        from_attributes=True,
        # Allow population by field name or alias
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """
    Base class for create/input schemas.

    These schemas accept string UUIDs from the client and convert to UUID objects.
    """
    model_config = ConfigDict(
        # Allow extra fields to be ignored (forward compatibility)
        extra='ignore',
    )


class MoneyBreakdown(BaseResponseSchema):
    """Subtotal/tax/total in cents, with derived display amounts."""
    subtotal_cents: int
    tax_cents: int
    total_cents: int

    @computed_field
    @property
    def subtotal(self) -> Decimal:
        return from_cents(self.subtotal_cents)

    @computed_field
    @property
    def tax(self) -> Decimal:
        return from_cents(self.tax_cents)

    @computed_field
    @property
    def total(self) -> Decimal:
        return from_cents(self.total_cents)


# Type aliases for common UUID patterns
OptionalUUID = Optional[UUID]
