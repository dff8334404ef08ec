"""Async SQLAlchemy engine and session factory.

Provides:
- build_engine():        create an AsyncEngine for a DSN (SQLite or PostgreSQL)
- build_sessionmaker():  the async_sessionmaker bound to an engine
- create_tables():       idempotent ``CREATE TABLE`` for every model
- Base.metadata:         re-exported so callers need not import model files

Unlike a module-level singleton, the engine is created by the application
factory (and by test fixtures) so that each app instance owns its own
connection pool and in-memory SQLite databases stay isolated per test.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

# Importing the models package registers all tables on Base.metadata.
from product_scraper.core.models import Base  # noqa: F401


def build_engine(database_url: str) -> AsyncEngine:
    """Create the async engine for *database_url*.

    SQLite needs special handling: an in-memory database lives and dies with
    one connection, so it is pinned with ``StaticPool``; file databases are
    shared across the event loop's tasks with ``check_same_thread`` off.
    Server databases get a sized pool with pre-ping.
    """
    if database_url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url.rstrip("/").endswith("sqlite+aiosqlite:"):
            kwargs["poolclass"] = StaticPool
        return create_async_engine(database_url, echo=False, **kwargs)

    return create_async_engine(
        database_url,
        echo=False,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
    )


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return the session factory used by the storage layer."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_tables(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
