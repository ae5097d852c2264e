"""
Database engine & session management.

Runtime uses an async driver (asyncpg in production, aiosqlite in
tests).  Schema is owned by Alembic; nothing here calls `create_all`.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from household_access.core.config import settings
from household_access.core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

engine = create_async_engine(
    settings.DATABASE_URL,
    # SQLite connections must not be shared across event loops
    poolclass=NullPool if settings.DATABASE_URL.startswith("sqlite") else None,
    echo=False,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency yielding a request-scoped session.

    Commits when the handler returns, rolls back on any exception.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def store_guard(db: AsyncSession, operation: str):
    """
    Wrap a mutating unit of work.

    Any SQLAlchemy failure rolls the session back and is re-raised as a
    generic `StoreUnavailableError`; the detail only goes to the log.
    Engine errors (`AccessError` subclasses) pass through untouched.
    """
    try:
        yield
    except SQLAlchemyError:
        logger.exception("Store failure during %s", operation)
        await db.rollback()
        raise StoreUnavailableError() from None
