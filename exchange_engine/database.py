import json
import logging
from decimal import Decimal
from datetime import datetime, date, timezone
from typing import AsyncGenerator
from uuid import UUID

from sqlalchemy import Column, DateTime, event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool
from psycopg.types.json import set_json_dumps

from exchange_engine.config import settings


logger = logging.getLogger(__name__)


# Custom JSON encoder that handles Decimal, datetime, UUID, etc.
class CustomJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal, datetime, UUID and other types."""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, UUID):
            return str(obj)
        return super().default(obj)


def custom_json_dumps(obj):
    """Custom JSON dumps function for psycopg and SQLAlchemy JSON columns."""
    return json.dumps(obj, cls=CustomJSONEncoder)


# Configure psycopg to use our custom JSON encoder globally
set_json_dumps(custom_json_dumps)


def _normalize_url(url: str) -> str:
    """Route plain PostgreSQL URLs to the async psycopg driver."""
    if url.startswith("postgresql+asyncpg://"):
        return url.replace("postgresql+asyncpg://", "postgresql+psycopg://")
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://")
    return url


def _enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """
    Let SQLAlchemy own BEGIN on SQLite.

    The sqlite3 driver manages transactions on its own, which breaks
    SAVEPOINT handling. Disabling that and emitting BEGIN ourselves makes
    nested transactions behave the same way they do on PostgreSQL.
    """
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_engine_from_url(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with settings appropriate for the backend."""
    if url.startswith("sqlite"):
        kwargs = {
            "echo": echo,
            "connect_args": {"check_same_thread": False},
        }
        if ":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:"):
            # One shared connection so every session sees the same in-memory database
            kwargs["poolclass"] = StaticPool
        engine = create_async_engine(url, **kwargs)
        _enable_sqlite_savepoints(engine)
        return engine

    return create_async_engine(
        _normalize_url(url),
        echo=echo,
        pool_pre_ping=True,  # Check connection health before use
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        json_serializer=custom_json_dumps,
        connect_args={
            "connect_timeout": 30,  # Connection timeout in seconds
        },
    )


engine = create_engine_from_url(settings.DATABASE_URL, echo=settings.DEBUG)


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async_session_factory = create_session_factory(engine)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class TimestampMixin:
    """Mixin for adding created_at and updated_at columns."""
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db(bind: AsyncEngine = None) -> None:
    """Create all tables registered on Base.metadata."""
    # Import all models to register them with Base.metadata
    from exchange_engine import models  # noqa: F401

    target = bind or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Database ready ({len(Base.metadata.tables)} tables registered)")
