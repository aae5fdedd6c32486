"""
Async database access — PostgreSQL, SQLite.

Driver mapping:
  postgresql://  → postgresql+asyncpg://     (requires asyncpg)
  sqlite://      → sqlite+aiosqlite://       (requires aiosqlite)

Usage:
    db = Database.from_settings(settings.database)   # once at startup
    await db.ping()
    async with db.session() as session:              # one transaction
        result = await session.execute(...)
    await db.close()                                 # drain at shutdown
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import DatabaseConfig
from core.errors import StartupError
from database.models import Base

logger = structlog.get_logger()


def _to_async_url(db_url: str) -> str:
    """Convert a sync database URL to its async driver equivalent."""
    replacements = [
        ("postgresql://", "postgresql+asyncpg://"),
        ("postgres://", "postgresql+asyncpg://"),
        ("sqlite://", "sqlite+aiosqlite://"),
    ]
    for sync_prefix, async_prefix in replacements:
        if db_url.startswith(sync_prefix):
            return db_url.replace(sync_prefix, async_prefix, 1)
    # already async or unknown driver: pass through
    return db_url


def _engine_kwargs(db_url: str, config: DatabaseConfig, echo: bool) -> dict:
    """Return database-specific engine configuration."""
    base = {"echo": echo}

    if "sqlite" in db_url:
        # busy timeout lets concurrent writers queue on the file lock
        return {**base, "connect_args": {"check_same_thread": False, "timeout": 30}}

    return {
        **base,
        "pool_size": config.pool_size,
        "max_overflow": config.max_overflow,
        "pool_timeout": config.pool_timeout,
        "pool_recycle": config.pool_recycle,
        "pool_pre_ping": True,
    }


def _install_sqlite_immediate_begin(engine: AsyncEngine) -> None:
    """
    SQLite has no row locks; take the write lock when a transaction begins
    so concurrent claimants serialise instead of failing lock upgrades.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """
    Owns the engine (connection pool) and session factory.

    Created once at process start and passed to every component that
    touches the store; `close()` drains the pool at shutdown.
    """

    def __init__(self, url: str, config: DatabaseConfig = None, echo: bool = False):
        if not url or "${" in url:
            raise StartupError("Missing required setting: database.url (DATABASE_URL)")
        self.config = config or DatabaseConfig(url=url)
        async_url = _to_async_url(url)
        self.engine: AsyncEngine = create_async_engine(
            async_url, **_engine_kwargs(async_url, self.config, echo)
        )
        if self.engine.dialect.name == "sqlite":
            _install_sqlite_immediate_begin(self.engine)
        self._session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        logger.info("database_engine_created",
                    dialect=self.engine.dialect.name,
                    url=str(self.engine.url).split("@")[-1])

    @classmethod
    def from_settings(cls, config: DatabaseConfig, echo: bool = False) -> Database:
        return cls(config.url, config=config, echo=echo)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide a transactional session scope: commit on exit, rollback on error."""
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def ping(self) -> None:
        """Round-trip to the store; raises StartupError when unreachable."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            raise StartupError(f"Database unreachable: {e}") from e
        logger.info("database_ok", dialect=self.dialect)

    async def create_schema(self) -> None:
        """Create all tables (idempotent)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_initialized",
                    dialect=self.dialect,
                    tables=list(Base.metadata.tables.keys()))

    async def close(self) -> None:
        """Dispose pooled connections. Call at shutdown."""
        await self.engine.dispose()
        logger.info("database_closed")
