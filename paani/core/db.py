# paani/core/db.py
# Async SQLAlchemy + session factory + schema init

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from paani.core.config import settings

# One engine per process
engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_pre_ping=True,
)

# Session factory
Session: async_sessionmaker[AsyncSession] = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIterator[AsyncSession]:
    """
    Unit of work against the database:
    >>> async with session_scope() as s:
    ...     await s.execute(...)
    """
    session: AsyncSession = (factory or Session)()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def init_db(bind=None) -> None:
    """
    Create tables on startup without Alembic.
    Every model shares the Base declared in paani.models.customer.
    """
    from paani.models import Base  # imports all models so metadata is complete
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
