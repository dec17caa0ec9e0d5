"""
Database connection and session management.
Uses SQLAlchemy async with aiosqlite.
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from typing import Optional

from .config import settings


def set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    # WAL mode lets live feeds read while a sender writes
    cursor.execute("PRAGMA journal_mode=WAL")
    # NORMAL synchronous is safe with WAL and faster than FULL
    cursor.execute("PRAGMA synchronous=NORMAL")
    # 32MB cache size for better read performance
    cursor.execute("PRAGMA cache_size=-32000")
    # Store temp tables in memory
    cursor.execute("PRAGMA temp_store=MEMORY")
    # Concurrent writers queue on the write lock for up to 5 seconds
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(database_url: str) -> AsyncEngine:
    """Create an async engine, applying the SQLite pragmas when relevant."""
    engine = create_async_engine(database_url, echo=False, future=True)
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", set_sqlite_pragma)
    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False
    )


# Create async engine
engine = build_engine(settings.DATABASE_URL)

# Create async session factory
AsyncSessionLocal = build_session_factory(engine)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


async def init_db(bind: Optional[AsyncEngine] = None):
    """Initialize database tables."""
    # Register the models on Base.metadata
    from . import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(bind: Optional[AsyncEngine] = None):
    """Close database connections."""
    await (bind or engine).dispose()
