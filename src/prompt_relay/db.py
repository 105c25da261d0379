"""Engine, sessions and schema bootstrap for the prompt store.

SQLite is the default backend. Every new connection is switched to WAL with a
busy timeout, so the push and tool endpoints keep reading while the CLI
writes. Writes that still run into a lock go through ``retry_on_db_lock``.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from functools import wraps
from pathlib import Path
from typing import Any, Optional, TypeVar

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from . import models as _models  # noqa: F401  (registers tables on SQLModel.metadata)
from .config import DatabaseSettings, Settings, clear_settings_cache, get_settings

_logger = logging.getLogger(__name__)

T = TypeVar("T")

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=30000",
    "PRAGMA foreign_keys=ON",
)

_LOCK_MARKERS = ("locked", "database is busy")


@dataclass
class _Database:
    engine: AsyncEngine
    sessions: async_sessionmaker[AsyncSession]
    schema_ready: bool = False


_db: Optional[_Database] = None
_schema_lock: Optional[asyncio.Lock] = None


def is_lock_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _LOCK_MARKERS)


def _backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry ``attempt`` (0-based): doubling, capped, +-25% jitter, at least 10ms."""
    delay = min(base_delay * 2**attempt, max_delay)
    return max(0.01, delay * random.uniform(0.75, 1.25))


def retry_on_db_lock(
    max_retries: int = 5,
    base_delay: float = 0.05,
    max_delay: float = 4.0,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Re-run an async function while SQLite reports a lock, at most ``max_retries`` more times.

    Any other ``OperationalError``, and a lock error on the last attempt, propagates.
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except OperationalError as exc:
                    if attempt >= max_retries or not is_lock_error(exc):
                        raise
                    delay = _backoff(attempt, base_delay, max_delay)
                    attempt += 1
                    _logger.warning(
                        "db.locked",
                        extra={
                            "function": func.__qualname__,
                            "attempt": attempt,
                            "max_retries": max_retries,
                            "delay_seconds": round(delay, 3),
                        },
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator


def _apply_sqlite_pragmas(dbapi_conn: Any, _record: Any) -> None:
    cursor = dbapi_conn.cursor()
    try:
        for pragma in SQLITE_PRAGMAS:
            cursor.execute(pragma)
    finally:
        cursor.close()


def _build_engine(settings: DatabaseSettings) -> AsyncEngine:
    url = make_url(settings.url)
    is_sqlite = url.get_backend_name() == "sqlite"
    connect_args: dict[str, Any] = {}
    if is_sqlite:
        # SQLite reports "unable to open database file" rather than creating the directory.
        if url.database and url.database != ":memory:":
            Path(url.database).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
        connect_args = {"timeout": 30.0, "check_same_thread": False}

    engine = create_async_engine(
        url,
        echo=settings.echo,
        pool_pre_ping=True,
        pool_recycle=1800,
        connect_args=connect_args,
    )
    if is_sqlite:
        event.listen(engine.sync_engine, "connect", _apply_sqlite_pragmas)
    return engine


def init_engine(settings: Optional[Settings] = None) -> None:
    """Create the process-wide engine and session factory on first use."""
    global _db
    if _db is not None:
        return
    engine = _build_engine((settings or get_settings()).database)
    _db = _Database(engine=engine, sessions=async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession))


def _database() -> _Database:
    init_engine()
    assert _db is not None
    return _db


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Yield a session whose close still completes when the caller is cancelled mid-read."""
    session = _database().sessions()
    try:
        yield session
    finally:
        closing = asyncio.ensure_future(session.close())
        try:
            await asyncio.shield(closing)
        except asyncio.CancelledError:
            with suppress(Exception):
                await closing
            raise


@retry_on_db_lock(max_retries=7, base_delay=0.1, max_delay=8.0)
async def ensure_schema(settings: Optional[Settings] = None) -> None:
    """Create missing tables once per process (again after ``reset_database_state``)."""
    global _schema_lock
    init_engine(settings)
    db = _database()
    if db.schema_ready:
        return
    if _schema_lock is None:
        _schema_lock = asyncio.Lock()
    async with _schema_lock:
        if not db.schema_ready:
            async with db.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)
            db.schema_ready = True


def _dispose(engine: AsyncEngine) -> None:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        try:
            asyncio.run(engine.dispose())
        except Exception:
            engine.sync_engine.dispose()
    else:
        # Nothing can be awaited from inside a running loop.
        engine.sync_engine.dispose()


def reset_database_state() -> None:
    """Forget the engine and schema flag; the next use re-reads settings (tests, CLI exit)."""
    global _db, _schema_lock
    db, _db, _schema_lock = _db, None, None
    if db is not None:
        _dispose(db.engine)
    clear_settings_cache()
