"""Schema migration gate.

``ensure_schema()`` must complete against a pool before any job is enqueued
or dequeued through it.  It is invoked by every entry point, so the
underlying procedure (Alembic ``upgrade head``) has to be idempotent.
"""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from jobrunner.config import Settings, get_settings
from jobrunner.db.engine import borrow_connection
from jobrunner.errors import MigrationError

logger = logging.getLogger("jobrunner.migrate")

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


def alembic_config(settings: Settings) -> Config:
    """Build the Alembic config in code; no alembic.ini is needed."""
    cfg = Config()
    cfg.set_main_option("script_location", str(MIGRATIONS_DIR))
    cfg.set_main_option("version_table", settings.MIGRATIONS_TABLE)
    return cfg


async def migrate(conn: AsyncConnection, settings: Settings | None = None) -> None:
    """Bring the job schema on *conn* up to the latest revision."""
    cfg = alembic_config(settings or get_settings())

    def _upgrade(sync_conn) -> None:
        cfg.attributes["connection"] = sync_conn
        command.upgrade(cfg, "head")

    await conn.run_sync(_upgrade)
    await conn.commit()


async def ensure_schema(engine: AsyncEngine, settings: Settings | None = None) -> None:
    """Run :func:`migrate` on one connection borrowed from *engine*.

    Raises:
        DatabaseConnectionError: no connection could be checked out.
        MigrationError: the migration itself failed.
    """
    async with borrow_connection(engine) as conn:
        try:
            await migrate(conn, settings)
        except Exception as exc:
            raise MigrationError(f"Schema migration failed: {exc}") from exc
    logger.debug("Job schema is up to date")
