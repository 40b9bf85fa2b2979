"""Database engines and sessions.

- FastAPI request handlers and the in-process sync run use AsyncSession (aiosqlite / asyncpg).
- SQLite table bootstrap uses the sync engine; Alembic builds its own sync engine.
"""

from __future__ import annotations

from typing import AsyncGenerator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from .config import settings


def _is_sqlite(url: URL) -> bool:
    return url.drivername.startswith("sqlite")


def _with_driver(url: URL, drivername: str) -> URL:
    """Return a copy of URL with a different drivername."""
    return url.set(drivername=drivername)


def _pool_kwargs() -> dict:
    return {
        "pool_size": max(1, int(settings.db_pool_size)),
        "max_overflow": max(0, int(settings.db_max_overflow)),
        "pool_timeout": max(1, int(settings.db_pool_timeout_s)),
        "pool_recycle": max(0, int(settings.db_pool_recycle_s)),
    }


raw_url: URL = make_url(settings.database_url)

# ----------------------------
# Sync engine (SQLite bootstrap)
# ----------------------------

if _is_sqlite(raw_url):
    timeout_s = max(0.0, float(settings.sqlite_busy_timeout_ms) / 1000.0)
    sync_engine = create_engine(
        _with_driver(raw_url, "sqlite"),
        connect_args={"check_same_thread": False, "timeout": timeout_s},
        poolclass=NullPool,
    )

    @event.listens_for(sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        """
        WAL lets the dashboard read while a sync run writes; busy_timeout waits for locks
        instead of failing immediately.
        """
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute(f"PRAGMA busy_timeout={int(settings.sqlite_busy_timeout_ms)};")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()
else:
    # Postgres schema comes from Alembic (psycopg), see alembic/env.py
    sync_engine = None

# ----------------------------
# Async engine/session (API + sync run)
# ----------------------------

async_url = raw_url
async_engine_kwargs: dict = {"pool_pre_ping": True}
if _is_sqlite(async_url):
    if async_url.drivername == "sqlite":
        async_url = _with_driver(async_url, "sqlite+aiosqlite")
else:
    if async_url.drivername == "postgresql":
        async_url = _with_driver(async_url, "postgresql+asyncpg")
    async_engine_kwargs.update(_pool_kwargs())

async_engine = create_async_engine(async_url, **async_engine_kwargs)
if _is_sqlite(async_url):
    event.listen(async_engine.sync_engine, "connect", _set_sqlite_pragmas)

AsyncSessionLocal = async_sessionmaker(async_engine, expire_on_commit=False, autoflush=False)

# ----------------------------
# Helpers
# ----------------------------


def init_db():
    """
    Create tables on SQLite only.

    Postgres schema is managed via Alembic.
    """
    if not _is_sqlite(raw_url):
        return
    from .models import Base
    Base.metadata.create_all(bind=sync_engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an AsyncSession."""
    async with AsyncSessionLocal() as session:
        yield session

