import logging
import os
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
from sqlalchemy.orm import declarative_base

from wildspot.config import settings

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> AsyncEngine:
    """Create the async engine, with pool options only where the driver has a pool"""
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        if url.database and url.database != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(url.database)), exist_ok=True)
        return create_async_engine(
            url,
            echo=settings.DB_ECHO,
            connect_args={"timeout": 30},
        )

    return create_async_engine(
        url,
        echo=settings.DB_ECHO,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_pre_ping=settings.DB_POOL_PRE_PING,
    )


engine = build_engine(settings.DATABASE_URL)

# Session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

Base = declarative_base()


async def get_session() -> AsyncGenerator[AsyncSession | Any, Any]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db(bind: AsyncEngine = engine):
    """Initialize database - create tables if not exist"""
    # Import models so every table is registered on Base.metadata
    from wildspot import models  # noqa: F401

    try:
        async with bind.begin() as conn:
            if settings.AUTO_CREATE_TABLES:
                await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


async def close_db():
    """Close database connections"""
    await engine.dispose()
    logger.info("Database connections closed")


async def check_db_connection(session: Optional[AsyncSession] = None) -> bool:
    """Check if database is healthy"""
    try:
        if session is not None:
            await session.execute(text("SELECT 1"))
            return True
        async with AsyncSessionLocal() as own_session:
            await own_session.execute(text("SELECT 1"))
            return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False
