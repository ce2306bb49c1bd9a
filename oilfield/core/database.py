"""
Database engine and session management.
Uses SQLAlchemy 2.0 with async support.

Production runs on PostgreSQL through asyncpg. SQLite (aiosqlite) is
accepted for tests and local runs; its engine is set up so that nested
transactions issue real SAVEPOINTs, which settlement relies on.
"""

from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
    AsyncEngine
)
from sqlalchemy.pool import StaticPool

from .config import settings, DatabaseConfig
from .logging import get_logger

logger = get_logger(__name__)

async_engine: Optional[AsyncEngine] = None
async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


def _enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    # pysqlite issues its own BEGIN lazily; hand transaction control to SQLAlchemy
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for ``url`` with dialect-appropriate pooling."""
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:"):
            # One shared connection, otherwise every checkout sees an empty db
            kwargs["poolclass"] = StaticPool
        engine = create_async_engine(url, echo=echo, **kwargs)
        _enable_sqlite_savepoints(engine)
        return engine

    return create_async_engine(url, echo=echo, **DatabaseConfig.get_engine_config(url))


def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Loaded rows stay readable after commit; services return them to routes
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_database(database_url: Optional[str] = None) -> None:
    """Create the global engine and session maker."""
    global async_engine, async_session_maker

    url = database_url or DatabaseConfig.get_database_url(async_driver=True)
    logger.info("Initializing database", dialect=url.split(":", 1)[0])

    async_engine = build_engine(url, echo=settings.debug)
    async_session_maker = session_factory(async_engine)

    if settings.database_create_tables:
        await DatabaseManager.create_tables()


async def close_database() -> None:
    global async_engine, async_session_maker

    if async_engine:
        await async_engine.dispose()
        logger.info("Database connections closed")

    async_engine = None
    async_session_maker = None


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Session scoped to one unit of work: committed on success, rolled back on
    any exception.
    """
    if not async_session_maker:
        raise RuntimeError("Database not initialized. Call init_database() first.")

    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


class DatabaseManager:
    """Schema bootstrap and health check."""

    @staticmethod
    async def create_tables() -> None:
        """Create any missing tables from model metadata."""
        from oilfield.models import Base

        if not async_engine:
            raise RuntimeError("Database not initialized")

        async with async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured", tables=len(Base.metadata.tables))

    @staticmethod
    async def health_check() -> bool:
        try:
            async with get_async_session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return False
