from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.config import settings

logger = logging.getLogger(__name__)

# Global variables for database
engine: AsyncEngine | None = None
async_session: async_sessionmaker[AsyncSession] | None = None


def async_database_url(database_url: str) -> str | None:
    """Return an asyncpg URL for Postgres connection strings, None otherwise."""
    url = make_url(database_url)
    if not url.drivername.startswith("postgresql"):
        return None
    query = dict(url.query) if url.query else {}
    query.pop("sslmode", None)
    return url.set(drivername="postgresql+asyncpg", query=query).render_as_string(hide_password=False)


async def init_database() -> None:
    """Initialize the async connection used for readiness checks."""
    global engine, async_session

    if not settings.database_url:
        logger.info("No DATABASE_URL provided, research store runs in memory")
        return

    async_url = async_database_url(settings.database_url)
    if async_url is None:
        logger.info("Async readiness checks are only available for Postgres databases")
        return

    try:
        engine = create_async_engine(
            async_url,
            echo=settings.debug,
            pool_pre_ping=True,
            pool_recycle=300,
        )
        async_session = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        logger.info("Database connection initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


async def close_database() -> None:
    global engine, async_session

    if engine is not None:
        await engine.dispose()
    engine = None
    async_session = None


async def get_database() -> AsyncSession | None:
    """Get database session."""
    if not async_session:
        yield None
        return

    async with async_session() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def check_database_health() -> bool:
    """Check if database is accessible."""
    if not engine:
        return True  # No async engine configured, consider healthy

    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False
