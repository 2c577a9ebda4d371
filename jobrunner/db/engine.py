"""Connection pool acquisition and borrowed-connection helpers.

A "pool" is an SQLAlchemy :class:`AsyncEngine`.  Engines passed in by the
caller are adopted as-is and never disposed here; engines built from a
connection string are owned by the runner and registered for disposal.
"""

from __future__ import annotations

import logging
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncIterator, Callable

from sqlalchemy import event
from sqlalchemy.exc import DBAPIError, InvalidRequestError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from jobrunner.config import Settings, dialect_of
from jobrunner.errors import ConfigurationError, DatabaseConnectionError
from jobrunner.options import PoolSource
from jobrunner.resources import ResourceRegistry

logger = logging.getLogger("jobrunner.db")

WithConnection = Callable[[], AbstractAsyncContextManager[AsyncConnection]]


def build_engine_kwargs(url: str, settings: Settings) -> dict:
    """Return engine kwargs appropriate for the dialect of *url*."""
    if dialect_of(url) == "postgres":
        return {
            "echo": settings.DB_ECHO,
            "pool_size": settings.DB_POOL_SIZE,
            "max_overflow": settings.DB_MAX_OVERFLOW,
            "pool_timeout": settings.DB_POOL_TIMEOUT,
            "pool_pre_ping": True,   # ensure stale connections are recycled
            "pool_recycle": 1800,    # recycle connections older than 30 min
        }
    # SQLite: single file, no pool tunables
    return {
        "echo": settings.DB_ECHO,
        "connect_args": {"check_same_thread": False},
    }


def _set_sqlite_pragmas(dbapi_conn, _conn_rec) -> None:
    # WAL lets the poll loop read while a job commits; busy_timeout waits
    # up to 5 s before raising "database is locked".
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


def create_engine_from_url(url: str, settings: Settings) -> AsyncEngine:
    try:
        engine = create_async_engine(url, **build_engine_kwargs(url, settings))
    except (InvalidRequestError, ImportError) as exc:
        # Bad URL or a driver without asyncio support
        raise ConfigurationError(f"Invalid connection string: {exc}") from exc

    if dialect_of(url) == "sqlite" and ":memory:" not in url:
        event.listen(engine.sync_engine, "connect", _set_sqlite_pragmas)
    return engine


# ─────────────────────────────────────────────────────────────────────────────
# Error observer
# ─────────────────────────────────────────────────────────────────────────────


def _on_handle_error(context) -> None:
    """Report a DBAPI error; the exception keeps propagating to its own caller only."""
    exc = context.original_exception
    if context.is_disconnect:
        logger.error("Database client lost its connection: %s", exc)
    else:
        logger.warning("Database client generated error: %s", exc)


def _on_pool_invalidate(dbapi_conn, conn_rec, exc) -> None:
    # The pool has already discarded the connection; nothing to do but report.
    if exc is not None:
        logger.error("Pooled connection invalidated: %s", exc)


def install_error_observer(engine: AsyncEngine) -> None:
    """Log connection-level errors on *engine* without making them fatal.

    Safe to call more than once for the same engine.
    """
    sync_engine = engine.sync_engine
    if not event.contains(sync_engine, "handle_error", _on_handle_error):
        event.listen(sync_engine, "handle_error", _on_handle_error)
    if not event.contains(sync_engine.pool, "invalidate", _on_pool_invalidate):
        event.listen(sync_engine.pool, "invalidate", _on_pool_invalidate)


# ─────────────────────────────────────────────────────────────────────────────
# Pool provider
# ─────────────────────────────────────────────────────────────────────────────


async def acquire_pool(
    source: PoolSource,
    registry: ResourceRegistry,
    settings: Settings,
) -> AsyncEngine:
    """Return the engine described by *source*, registering disposal if owned."""
    if source.owned:
        engine = create_engine_from_url(source.url, settings)
        registry.add("connection pool", engine.dispose)
        logger.debug("Created connection pool for %s", engine.url.render_as_string(hide_password=True))
    else:
        engine = source.engine
        logger.debug("Adopted caller-owned connection pool")

    install_error_observer(engine)
    return engine


@asynccontextmanager
async def borrow_connection(engine: AsyncEngine) -> AsyncIterator[AsyncConnection]:
    """Check one connection out of *engine* for the duration of the block."""
    try:
        conn = await engine.connect()
    except (DBAPIError, OSError) as exc:
        raise DatabaseConnectionError(f"Could not connect to the database: {exc}") from exc
    try:
        yield conn
    finally:
        await conn.close()


def make_with_connection(engine: AsyncEngine) -> WithConnection:
    """Return a zero-argument factory of borrowed-connection contexts for *engine*."""

    def with_connection():
        return borrow_connection(engine)

    return with_connection
