"""
Async engine and session lifecycle for the order store.

One engine and one session factory live for the whole process. Request
handlers receive sessions through get_db; background tasks (publisher
flushes, tracking loaders) take the factory itself and open short sessions.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from delivery.core.config import get_settings
from delivery.core.exceptions import DeliveryError, StoreUnavailable
from delivery.core.logging import get_logger
from delivery.core.retry import retry_with_backoff

logger = get_logger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None

ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}


def async_database_url(url: str) -> str:
    """Rewrite a plain PostgreSQL or SQLite URL to use its async driver."""
    for prefix, async_prefix in ASYNC_DRIVERS.items():
        if url.startswith(prefix):
            return async_prefix + url[len(prefix):]
    return url


def _engine_options(url: str) -> dict[str, Any]:
    settings = get_settings()
    options: dict[str, Any] = {"echo": settings.debug}

    if url.startswith("sqlite"):
        # Each session gets its own connection, so conditional updates
        # serialize on the SQLite write lock.
        options["poolclass"] = NullPool
        options["connect_args"] = {"timeout": 30}
        return options

    options.update(
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        connect_args={
            "server_settings": {"application_name": settings.app_name},
            "command_timeout": 60,
            "timeout": 10,
        },
    )
    return options


def create_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """
    Build an async engine for database_url, or for the configured store.

    Args:
        database_url: Override for settings.database_url

    Returns:
        Async engine with dialect-appropriate pooling
    """
    url = async_database_url(database_url or get_settings().database_url)
    engine = create_async_engine(url, **_engine_options(url))
    logger.info("Order store engine created", dialect=engine.dialect.name)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_engine()
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Open a session that commits on clean exit and rolls back on error.

    Yields:
        Async database session
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for database session injection.

    Example:
        @router.get("/orders/available")
        async def available(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with get_session() as session:
        yield session


async def _ping() -> None:
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (OperationalError, DBAPIError, OSError) as e:
        raise StoreUnavailable(f"Order store unreachable: {e}") from e


async def check_database_health(max_retries: int = 3, retry_delay: float = 1.0) -> bool:
    """
    Ping the order store, retrying connection failures with backoff.

    Returns:
        True when a ping succeeded within max_retries attempts
    """
    try:
        await retry_with_backoff(
            _ping, "database_health_check", max_attempts=max_retries, retry_delay=retry_delay
        )
    except DeliveryError as e:
        logger.error("Order store health check failed", attempts=max_retries, error=str(e))
        return False
    return True


async def create_tables(engine: Optional[AsyncEngine] = None) -> None:
    """
    Create every table from model metadata.

    SQLite development databases and tests use this; PostgreSQL
    deployments run Alembic migrations instead.
    """
    from delivery.database.models import Base

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Order store tables created", dialect=engine.dialect.name)


async def initialize_database() -> None:
    """
    Create the engine and wait until the store answers.

    Raises:
        StoreUnavailable: If the store never answers
    """
    get_session_factory()
    if get_settings().is_sqlite:
        await create_tables()

    if not await check_database_health(max_retries=5, retry_delay=2.0):
        raise StoreUnavailable("Order store unreachable during startup")
    logger.info("Order store ready")


async def close_database_connections() -> None:
    global _engine, _session_factory
    if _engine is None:
        return
    try:
        await _engine.dispose()
        logger.info("Order store connections closed")
    finally:
        _engine = None
        _session_factory = None
