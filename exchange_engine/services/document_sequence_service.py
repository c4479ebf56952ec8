"""
Document Sequence Service for Atomic Number Generation

Format: {PREFIX}-{YYYYMMDD}-{SEQUENCE}, one counter per prefix per day.

USAGE:
    from exchange_engine.services.document_sequence_service import DocumentSequenceService

    async def create_return(db: AsyncSession):
        service = DocumentSequenceService(db)
        return_number = await service.generate_return_number()
        # Returns: RTN-20261016-00001

SUPPORTED PREFIXES:
    RTN - Return
    EXC - Exchange order
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from exchange_engine.models.document_sequence import DocumentSequence


# Prefix metadata
DOCUMENT_METADATA = {
    "RTN": {"name": "Return", "padding": 5},
    "EXC": {"name": "Exchange Order", "padding": 5},
}

RETURN_PREFIX = "RTN"
EXCHANGE_ORDER_PREFIX = "EXC"

_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class DocumentSequenceService:
    """
    Service for generating document numbers.

    The counter is advanced with a single INSERT ... ON CONFLICT DO UPDATE
    ... RETURNING, so no row is read under SELECT FOR UPDATE and the first
    number of a day cannot race into a unique violation. The increment is
    part of the caller's transaction and rolls back with it.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_next_number(
        self,
        prefix: str,
        sequence_date: Optional[str] = None
    ) -> str:
        """
        Get next document number with atomic increment.

        Args:
            prefix: Document prefix (RTN, EXC)
            sequence_date: Optional YYYYMMDD. Defaults to today (UTC).

        Returns:
            Formatted document number, e.g., EXC-20261016-00001

        Raises:
            ValueError: If prefix is unknown
        """
        doc_prefix = prefix.upper()
        if doc_prefix not in DOCUMENT_METADATA:
            valid = ", ".join(DOCUMENT_METADATA.keys())
            raise ValueError(f"Invalid document prefix '{doc_prefix}'. Valid prefixes: {valid}")

        if not sequence_date:
            sequence_date = DocumentSequence.today()

        number, padding = await self._increment(doc_prefix, sequence_date)
        return DocumentSequence.format_number(doc_prefix, sequence_date, number, padding)

    async def generate_return_number(self) -> str:
        return await self.get_next_number(RETURN_PREFIX)

    async def generate_order_number(self, prefix: str = EXCHANGE_ORDER_PREFIX) -> str:
        return await self.get_next_number(prefix)

    async def _increment(self, prefix: str, sequence_date: str) -> tuple[int, int]:
        """
        Create the day's counter at 1, or bump the existing one.

        Returns:
            (number just taken, padding length)
        """
        dialect = self.db.get_bind().dialect.name
        insert = _UPSERT_INSERTS.get(dialect)
        if insert is None:
            raise NotImplementedError(f"Document numbering is not supported on {dialect}")

        now = datetime.now(timezone.utc)
        stmt = insert(DocumentSequence).values(
            id=uuid.uuid4(),
            prefix=prefix,
            sequence_date=sequence_date,
            current_number=1,
            padding_length=DOCUMENT_METADATA[prefix]["padding"],
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["prefix", "sequence_date"],
            set_={
                "current_number": DocumentSequence.__table__.c.current_number + 1,
                "updated_at": now,
            },
        ).returning(DocumentSequence.current_number, DocumentSequence.padding_length)

        result = await self.db.execute(stmt)
        row = result.one()
        return row[0], row[1]
