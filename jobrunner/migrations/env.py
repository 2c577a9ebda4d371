"""Alembic migration environment — supports both SQLite (dev) and PostgreSQL (prod).

Two ways in:

* Programmatically, from ``jobrunner.migrate.migrate()``: the runner hands
  over an already-borrowed connection via ``config.attributes["connection"]``.
* From the Alembic CLI, with an alembic.ini that sets
  ``script_location = jobrunner:migrations``:
      DATABASE_URL=postgresql+asyncpg://... alembic upgrade head
  The URL comes from settings.sync_db_url() because Alembic's
  context.run_migrations() is synchronous.
"""

from __future__ import annotations

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from jobrunner.config import settings
from jobrunner.db.models import Base

config = context.config

# Set up logging from alembic.ini [loggers] section if present
if config.config_file_name is not None and config.attributes.get("connection") is None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

version_table = config.get_main_option("version_table") or settings.MIGRATIONS_TABLE


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        version_table=version_table,
        compare_type=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Generate SQL script without connecting to the DB.

    Usage:  alembic upgrade head --sql
    """
    _configure(
        url=config.get_main_option("sqlalchemy.url") or settings.sync_db_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_on(connection) -> None:
    _configure(
        connection=connection,
        # SQLite cannot ALTER tables natively, so Alembic rewrites them
        render_as_batch=connection.dialect.name == "sqlite",
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connection = config.attributes.get("connection")
    if connection is not None:
        run_migrations_on(connection)
        return

    section = config.get_section(config.config_ini_section, {})
    section.setdefault("sqlalchemy.url", settings.sync_db_url())
    connectable = engine_from_config(
        section,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,  # do not pool connections during migration
    )
    with connectable.connect() as conn:
        run_migrations_on(conn)


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
