"""
Async SQLAlchemy engine and session management. Single connection pool for everything.

The `Database` object is created once by the app factory and handed to every
store that needs it.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base. All models inherit from this."""
    pass


def _normalize_url(url: str) -> str:
    # Ensure we're using asyncpg driver for PostgreSQL
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://") and not url.startswith("sqlite+aiosqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


class Database:
    def __init__(self, url: str, echo: bool = False):
        self.url = _normalize_url(url)
        self.is_sqlite = "sqlite" in self.url

        kwargs = {"echo": echo}
        if self.is_sqlite:
            # In-memory SQLite must share one connection or every session sees an empty db
            if ":memory:" in self.url or self.url.rstrip("/").endswith("aiosqlite:"):
                kwargs["poolclass"] = StaticPool
                kwargs["connect_args"] = {"check_same_thread": False}
        else:
            kwargs["pool_size"] = 20
            kwargs["max_overflow"] = 10
            kwargs["pool_pre_ping"] = True

        self.engine = create_async_engine(self.url, **kwargs)
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        logger.info("Database engine created (%s)", "sqlite" if self.is_sqlite else "postgresql")

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """One unit of work. Commits on success, rolls back on any error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    def insert(self, model):
        """Dialect insert construct, so callers can use on_conflict_* portably."""
        if self.dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            from sqlalchemy.dialects.sqlite import insert
        return insert(model)

    async def init_schema(self, include_memory: bool = True) -> None:
        """Create tables. Memory tables are optional and can be installed separately."""
        # Import all models so they register with Base.metadata
        from ..models import conversation, quota, memory  # noqa: F401

        tables = [
            table for table in Base.metadata.sorted_tables
            if include_memory or table.name not in memory.MEMORY_TABLES
        ]
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all, tables=tables)
        logger.info(
            "Database tables created/verified (memory schema %s)",
            "included" if include_memory else "skipped",
        )

    async def close(self) -> None:
        await self.engine.dispose()
        logger.info("Database engine disposed")
