"""Database engines and sessions.

- Worker invocations (Celery, inline claim endpoint, Alembic) use sync Session (psycopg).
- FastAPI read-only handlers use AsyncSession (asyncpg) for higher concurrency.
"""

from __future__ import annotations

import random
import time
from typing import AsyncGenerator, Callable, Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool

from .config import settings


def _is_sqlite(url: URL) -> bool:
    return url.drivername.startswith("sqlite")


def _with_driver(url: URL, drivername: str) -> URL:
    """Return a copy of URL with a different drivername."""
    return url.set(drivername=drivername)


raw_url: URL = make_url(settings.database_url)

# ----------------------------
# Sync engine/session (workers)
# ----------------------------

if _is_sqlite(raw_url):
    # NullPool so each thread gets its own connection; the claim protocol relies on
    # separate connections contending through the busy timeout, not a shared one.
    timeout_s = max(0.0, float(settings.sqlite_busy_timeout_ms) / 1000.0)
    sync_engine = create_engine(
        raw_url,
        connect_args={"check_same_thread": False, "timeout": timeout_s},
        poolclass=NullPool,
    )

    @event.listens_for(sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        """
        Improve concurrency characteristics for SQLite.
        - WAL: allows concurrent readers while a writer is active
        - busy_timeout: wait for locks instead of failing immediately
        """
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.execute(f"PRAGMA busy_timeout={int(settings.sqlite_busy_timeout_ms)};")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()
else:
    sync_url = raw_url
    if sync_url.drivername == "postgresql":
        sync_url = _with_driver(sync_url, "postgresql+psycopg")
    sync_engine = create_engine(
        sync_url,
        pool_pre_ping=True,
        pool_size=max(1, settings.db_pool_size),
        max_overflow=max(0, settings.db_max_overflow),
        pool_timeout=max(1, settings.db_pool_timeout_s),
        pool_recycle=max(0, settings.db_pool_recycle_s),
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=sync_engine)

# ----------------------------
# Async engine/session (API)
# ----------------------------

async_url = raw_url
async_engine_kwargs: dict = {"pool_pre_ping": True}
if _is_sqlite(async_url):
    if async_url.drivername == "sqlite":
        async_url = _with_driver(async_url, "sqlite+aiosqlite")
else:
    if async_url.drivername == "postgresql":
        async_url = _with_driver(async_url, "postgresql+asyncpg")
    async_engine_kwargs.update(
        {
            "pool_size": max(1, settings.db_pool_size),
            "max_overflow": max(0, settings.db_max_overflow),
            "pool_timeout": max(1, settings.db_pool_timeout_s),
            "pool_recycle": max(0, settings.db_pool_recycle_s),
        }
    )

async_engine = create_async_engine(async_url, **async_engine_kwargs)
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


def get_sync_db() -> Generator:
    """Dependency that yields a sync DB session (job engine calls)."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _is_sqlite_locked_error(exc: BaseException) -> bool:
    msg = str(exc).lower()
    return "database is locked" in msg or "database table is locked" in msg


def commit_with_retry(
    db: Session,
    *,
    apply: Optional[Callable[[], None]] = None,
    max_retries: int = 6,
    base_sleep_s: float = 0.05,
) -> None:
    """
    SQLite can transiently raise 'database is locked' during concurrent access.

    The rollback after a failed commit discards the pending writes, so a retry is
    only possible when `apply` is given: it re-stages the unit of work before the
    next commit. Without it the lock error is raised after the rollback.
    Retries use exponential backoff + jitter.
    """
    attempt = 0
    while True:
        try:
            db.commit()
            return
        except OperationalError as e:
            db.rollback()
            if apply is None or attempt >= max_retries or not _is_sqlite_locked_error(e):
                raise
            sleep_s = min(2.0, base_sleep_s * (2 ** attempt)) + random.uniform(0, 0.05)
            time.sleep(sleep_s)
            attempt += 1
            apply()


def chunk_list(items: list, chunk_size: int) -> list[list]:
    size = max(1, int(chunk_size))
    return [items[i:i + size] for i in range(0, len(items), size)]
