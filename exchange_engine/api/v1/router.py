from fastapi import APIRouter

from exchange_engine.api.v1.endpoints import exchanges


api_router = APIRouter()

# Exchanges
api_router.include_router(
    exchanges.router,
    prefix="/exchanges",
    tags=["Exchanges"]
)
