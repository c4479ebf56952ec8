import logging
import secrets
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from exchange_engine.config import settings
from exchange_engine.core.exceptions import ConflictError
from exchange_engine.models.store_credit import (
    StoreCredit,
    StoreCreditTransaction,
    StoreCreditSourceType,
    StoreCreditTransactionType,
)

logger = logging.getLogger(__name__)

# No 0/O or 1/I
STORE_CREDIT_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_store_credit_code() -> str:
    suffix = "".join(
        secrets.choice(STORE_CREDIT_CODE_ALPHABET)
        for _ in range(settings.STORE_CREDIT_CODE_LENGTH)
    )
    return f"{settings.STORE_CREDIT_CODE_PREFIX}{suffix}"


class StoreCreditService:
    """Issues store credit with a unique human-readable code."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _code_exists(self, code: str) -> bool:
        result = await self.db.execute(
            select(StoreCredit.id).where(StoreCredit.code == code)
        )
        return result.first() is not None

    async def generate_unique_code(self) -> str:
        """
        Pick a code not already in use.

        Raises:
            ConflictError: If every attempt collided with an existing code
        """
        for attempt in range(1, settings.STORE_CREDIT_CODE_MAX_ATTEMPTS + 1):
            code = generate_store_credit_code()
            if not await self._code_exists(code):
                return code
            logger.warning(f"Store credit code collision on attempt {attempt}: {code}")

        raise ConflictError(
            f"Could not generate a unique store credit code after "
            f"{settings.STORE_CREDIT_CODE_MAX_ATTEMPTS} attempts. Please retry."
        )

    async def issue(
        self,
        amount_cents: int,
        customer_id: Optional[uuid.UUID],
        source_return_id: uuid.UUID,
        return_number: str,
        issued_by: Optional[uuid.UUID] = None,
    ) -> StoreCredit:
        """Create a store credit and its opening ledger entry."""
        code = await self.generate_unique_code()

        credit = StoreCredit(
            code=code,
            customer_id=customer_id,
            original_amount_cents=amount_cents,
            current_balance_cents=amount_cents,
            source_type=StoreCreditSourceType.REFUND.value,
            source_return_id=source_return_id,
            issued_by=issued_by,
            notes=f"Exchange refund difference: {return_number}",
        )
        self.db.add(credit)
        await self.db.flush()

        self.db.add(StoreCreditTransaction(
            store_credit_id=credit.id,
            transaction_type=StoreCreditTransactionType.ISSUE.value,
            amount_cents=amount_cents,
            balance_after_cents=amount_cents,
            notes=f"Exchange difference refund {return_number}",
            performed_by=issued_by,
        ))
        await self.db.flush()

        logger.info(f"Issued store credit {code} for {amount_cents} cents (return {return_number})")
        return credit
