from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from exchange_engine.config import settings
from exchange_engine.api.deps import DB
from exchange_engine.api.v1.router import api_router
from exchange_engine.core.exceptions import register_exception_handlers
from exchange_engine.database import init_db, engine


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Optionally create tables (AUTO_CREATE_TABLES, development only)

    Shutdown:
    - Dispose the connection pool
    """
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    if settings.AUTO_CREATE_TABLES:
        await init_db()

    yield

    logger.info(f"Shutting down {settings.APP_NAME}")
    await engine.dispose()


API_DESCRIPTION = """
Exchange transaction engine: return previously purchased items and buy
replacements in one atomic operation. The price difference is settled as
an additional payment, a refund, or store credit.

All monetary fields are integer cents. Errors are returned as
`{"error": "...", "type": "..."}`.

| Code | Description |
|------|-------------|
| 400 | Validation failed or order not exchangeable |
| 401 | Invalid/expired token |
| 404 | Order, item, product or exchange not found |
| 409 | Order locked by another transaction, retry |
| 500 | Internal error |
"""

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=API_DESCRIPTION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# Include API router
app.include_router(api_router, prefix="/api/v1")


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check(db: DB):
    """Health check endpoint with database validation."""
    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown"
        }
    }

    # Check database connectivity
    try:
        result = await db.execute(text("SELECT 1"))
        result.scalar()
        health_status["checks"]["database"] = "connected"
    except SQLAlchemyError:
        logger.exception("Health check database query failed")
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = "error"

    # Return 503 if unhealthy
    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "redoc": "/redoc",
    }
