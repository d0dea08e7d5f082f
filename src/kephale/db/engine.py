"""Async SQLAlchemy engine and session factory.

Learn: The real-time layer only touches the database for short lookups
(membership checks, display names, push subscriptions), so sessions are
opened per request via get_db, or per check via session_scope() where
there is no request (WebSocket subscribe).
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from kephale.config import settings


def _engine_options(url: str) -> dict:
    # SQLite (local runs) has no connection pool to size
    if url.startswith("sqlite"):
        return {}
    return {
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_pre_ping": True,
    }


engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    **_engine_options(settings.database_url),
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """A session outside of a request; closed on exit."""
    async with async_session_factory() as session:
        yield session


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one session per request."""
    async with session_scope() as session:
        yield session
