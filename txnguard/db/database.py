"""Async SQLAlchemy engine for the history, report outbox and review tables.

Only imported when ``database_enabled`` is set; stores receive
``async_session_factory`` from the engine assembly.
"""

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from txnguard.config import settings

logger = structlog.get_logger()

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
    pool_size=settings.database_pool_size,
    max_overflow=settings.database_max_overflow,
)

# Stores open one short session per operation and commit explicitly
async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db() -> None:
    """Create missing screening tables."""
    from txnguard.db.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    await engine.dispose()
    logger.info("database_pool_closed")


async def check_db() -> bool:
    """True when the screening database answers a trivial query."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("database_check_failed", error=f"{type(exc).__name__}: {exc}")
        return False
    return True
