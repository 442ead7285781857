"""
Database Configuration and Session Management
============================================

This module provides the async database engine, session factory, and table creation
functionality for the wallet ledger service.
"""

import logging
from contextlib import asynccontextmanager
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from config import Config
from models import Base

logger = logging.getLogger(__name__)


def build_async_database_url(database_url: str) -> str:
    """Rewrite a plain database URL for the async drivers (asyncpg / aiosqlite)"""
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        # asyncpg uses 'ssl' instead of 'sslmode' parameter
        database_url = database_url.replace("sslmode=", "ssl=")
    elif database_url.startswith("sqlite://"):
        database_url = database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return database_url


def configure_sqlite_engine(engine: AsyncEngine) -> AsyncEngine:
    """
    Make SQLite transactions behave like the ledger expects.

    pysqlite defers BEGIN until the first write, so a reference check followed by a
    balance update would not be one serialized unit. Taking the write lock with
    BEGIN IMMEDIATE at the start of every transaction gives SQLite the same
    all-or-nothing behaviour the ledger gets from PostgreSQL row locks.
    """
    sync_engine: Engine = engine.sync_engine

    @event.listens_for(sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Hand transaction control to SQLAlchemy instead of the driver
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.close()

    @event.listens_for(sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def create_engine_for_url(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine, applying the SQLite transaction hooks where needed"""
    url = build_async_database_url(database_url)

    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=echo)
        return configure_sqlite_engine(engine)

    return create_async_engine(
        url,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,
        echo=echo,
        connect_args={
            "server_settings": {"application_name": "wallet_ledger_async"},
            "timeout": 10,
            "command_timeout": 30,
        },
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,  # Objects stay readable after the unit of work commits
    )


async_engine = create_engine_for_url(Config.DATABASE_URL, echo=Config.DATABASE_ECHO)

AsyncSessionLocal = create_session_factory(async_engine)


@asynccontextmanager
async def get_async_session():
    """
    Async context manager for database sessions.

    Usage:
        async with get_async_session() as session:
            result = await session.execute(select(Wallet).where(...))
            wallet = result.scalar_one_or_none()
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_database(engine: AsyncEngine = None) -> bool:
    """Create all database tables if they don't exist"""
    engine = engine or async_engine
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all, checkfirst=True)

        logger.info(f"✅ Database schema verified: {', '.join(sorted(Base.metadata.tables))}")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}", exc_info=True)
        return False
