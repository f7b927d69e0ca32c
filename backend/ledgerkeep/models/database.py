"""Local ledger store: engine, session management and schema migration"""
import asyncio
from pathlib import Path
from typing import Optional

import structlog
from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from ledgerkeep.config import get_settings
from ledgerkeep.errors import StorageError
from ledgerkeep.migrations import run_migrations

logger = structlog.get_logger()

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None
_open_lock = asyncio.Lock()


class Base(DeclarativeBase):
    """Base class for all models"""
    pass


def _configure_sqlite(engine: AsyncEngine) -> None:
    """Autocommit at the driver level so BEGIN covers DDL, and WAL journaling"""

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode = WAL")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_store_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an engine for the ledger database, creating its directory"""
    url = make_url(database_url)
    if url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(database_url, echo=echo)
    _configure_sqlite(engine)
    return engine


async def open_store(database_url: Optional[str] = None) -> AsyncEngine:
    """
    Open the process-wide ledger store and bring its schema up to date.

    Idempotent: later calls return the cached engine.
    """
    global _engine, _session_factory

    async with _open_lock:
        if _engine is not None:
            return _engine

        settings = get_settings()
        engine = create_store_engine(database_url or settings.database_url, echo=settings.debug)
        try:
            async with engine.begin() as conn:
                version = await conn.run_sync(run_migrations)
        except SQLAlchemyError as e:
            await engine.dispose()
            raise StorageError(f"Failed to open ledger store: {e}") from e

        logger.info("Ledger store opened", schema_version=version)
        _engine = engine
        _session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        return _engine


def get_session_factory() -> async_sessionmaker:
    """Session factory of the opened store"""
    if _session_factory is None:
        raise StorageError("Ledger store not opened. Call open_store() first.")
    return _session_factory


async def close_store():
    """Close database connections"""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Ledger store closed")


def is_store_open() -> bool:
    return _engine is not None
