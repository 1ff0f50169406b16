"""
Database setup for the durable context store.
Async SQLAlchemy engine and session factory; SQLite (aiosqlite) locally,
PostgreSQL (asyncpg) in production.
"""

from typing import Optional
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
import structlog

from .tables import Base

logger = structlog.get_logger(__name__)


def create_engine_for_url(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine; pool tuning only applies to server databases"""

    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=echo)

    return create_async_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=1800,
        pool_timeout=30,
        echo=echo,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_database(engine: AsyncEngine) -> None:
    """Create the context tables if they do not exist"""

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Context tables ready", url=_safe_url(engine))


async def check_database_connection(engine: AsyncEngine) -> bool:
    """Check if the database answers a trivial query"""
    try:
        async with engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            return result.scalar() == 1
    except Exception as e:
        logger.error("Database connection check failed", error=str(e))
        return False


def _safe_url(engine: Optional[AsyncEngine]) -> str:
    if engine is None:
        return ""
    return engine.url.render_as_string(hide_password=True)
