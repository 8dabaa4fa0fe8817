"""Registry database engine and sessions.

The relayer process, the reconcile script and alembic may open the same
SQLite file at once, so file databases run in WAL mode with a busy timeout.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from swaprelay.config import get_settings
from swaprelay.ledger.models import Base

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_MS = 5000

# Global engine and session factory
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def async_database_url(url: str) -> str:
    """Use the aiosqlite driver for plain sqlite URLs."""
    if url.startswith("sqlite:///") and "aiosqlite" not in url:
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def _sqlite_file(url: str) -> Optional[Path]:
    parsed = make_url(url)
    if not parsed.drivername.startswith("sqlite"):
        return None
    if not parsed.database or parsed.database == ":memory:":
        return None
    return Path(parsed.database)


def _set_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    cursor.close()


def get_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Get or create the registry engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        db_url = async_database_url(database_url or settings.database_url)

        db_file = _sqlite_file(db_url)
        if db_file is not None:
            db_file.parent.mkdir(parents=True, exist_ok=True)

        _engine = create_async_engine(
            db_url,
            echo=settings.debug and not settings.is_production,
        )
        if db_file is not None:
            event.listen(_engine.sync_engine, "connect", _set_sqlite_pragmas)
        logger.info(f"Registry database: {settings._redact_url(db_url)}")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory.

    Snapshots are built inside the session, so objects are not expired on
    commit.
    """
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


@asynccontextmanager
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Session that commits on success and rolls back on error."""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create any missing registry tables.

    Production databases are managed by alembic; this covers dry runs and
    fresh SQLite files.
    """
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Registry tables ready: {', '.join(sorted(Base.metadata.tables))}")


async def close_db() -> None:
    """Dispose of the engine so the next call reconnects."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
