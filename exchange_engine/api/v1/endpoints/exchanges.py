"""
Exchange endpoints.

Return items and buy replacements in one transaction. Domain errors are
rendered by the handlers in core.exceptions as {"error": ..., "type": ...}.
"""
import uuid

from fastapi import APIRouter, status

from exchange_engine.api.deps import DB, CurrentUserId
from exchange_engine.schemas.exchange import (
    ExchangeCalculateRequest,
    ExchangeDetailResponse,
    ExchangePreviewResponse,
    ExchangeRequest,
    ExchangeResponse,
)
from exchange_engine.services.exchange_service import ExchangeService

router = APIRouter()


@router.post("", response_model=ExchangeResponse, status_code=status.HTTP_201_CREATED)
async def process_exchange(
    payload: ExchangeRequest,
    db: DB,
    current_user_id: CurrentUserId,
):
    """
    Process an exchange.

    Returns the new return and order numbers, both value breakdowns, the
    signed difference (positive: customer pays) and how it was settled.
    """
    service = ExchangeService(db)
    result = await service.process_exchange(payload, user_id=current_user_id)
    return ExchangeResponse.model_validate(result)


@router.post("/calculate", response_model=ExchangePreviewResponse)
async def calculate_exchange(
    payload: ExchangeCalculateRequest,
    db: DB,
    current_user_id: CurrentUserId,
):
    """Preview an exchange without locking or writing anything."""
    service = ExchangeService(db)
    preview = await service.calculate_exchange(payload)
    return ExchangePreviewResponse.model_validate(preview)


@router.get("/{return_id}", response_model=ExchangeDetailResponse)
async def get_exchange(
    return_id: uuid.UUID,
    db: DB,
    current_user_id: CurrentUserId,
):
    """Get exchange details by return ID."""
    service = ExchangeService(db)
    detail = await service.get_exchange(return_id)
    return ExchangeDetailResponse.model_validate(detail)
