from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from panelsync.core.config import get_settings


def build_engine(database_url: str) -> AsyncEngine:
    """Engine for PostgreSQL (asyncpg) or SQLite (aiosqlite).

    In-memory SQLite is pinned to one connection so every session sees the
    same database.
    """
    kwargs: dict[str, Any] = {}
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        return create_async_engine(url, **kwargs)
    settings = get_settings()
    kwargs.update(
        pool_pre_ping=True,
        pool_size=max(1, settings.api_db_pool_size),
        max_overflow=max(0, settings.api_db_max_overflow),
        pool_recycle=1800,
    )
    return create_async_engine(database_url, **kwargs)


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Rows stay readable after commit; services commit and then build results from them.
    return async_sessionmaker(engine, expire_on_commit=False)


engine = build_engine(get_settings().database_url)
SessionLocal = build_sessionmaker(engine)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session
