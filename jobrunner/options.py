"""Runner options and their resolution into one pool source and one task source."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping

from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncEngine

from jobrunner.config import Settings
from jobrunner.errors import ConfigurationError


class RunnerOptions(BaseModel):
    """Caller-supplied configuration for ``run``, ``run_once`` and ``schema_only``.

    At most one of ``connection_pool`` / ``connection_string`` may be set, and
    exactly one of ``task_list`` / ``task_directory`` (``schema_only`` needs
    neither).  The remaining fields tune the worker and default from
    :class:`~jobrunner.config.Settings` when left unset.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="forbid")

    connection_pool: AsyncEngine | None = None
    connection_string: str | None = None

    task_list: Mapping[str, Any] | None = None
    task_directory: Path | None = None

    concurrency: int | None = None
    poll_interval: float | None = None
    worker_id: str | None = None
    max_attempts: int | None = None
    retry_delay: float | None = None
    lock_duration: float | None = None
    heartbeat_interval: float | None = None


class PoolSourceKind(str, enum.Enum):
    ADOPTED = "adopted"
    CONNECTION_STRING = "connection_string"
    ENVIRONMENT = "environment"


@dataclass(frozen=True)
class PoolSource:
    kind: PoolSourceKind
    engine: AsyncEngine | None = None
    url: str | None = None

    @property
    def owned(self) -> bool:
        """True when the runner creates the pool and must dispose of it."""
        return self.kind is not PoolSourceKind.ADOPTED


@dataclass(frozen=True)
class TaskSource:
    task_list: Mapping[str, Callable[..., Any]] | None = None
    directory: Path | None = None


def check_pool_exclusivity(options: RunnerOptions) -> None:
    if options.connection_pool is not None and options.connection_string is not None:
        raise ConfigurationError(
            "Both `connection_pool` and `connection_string` are set, "
            "at most one of these options should be provided"
        )


def resolve_task_source(options: RunnerOptions) -> TaskSource:
    """Select exactly one handler source from *options*."""
    if options.task_list is not None and options.task_directory is not None:
        raise ConfigurationError(
            "Exactly one of either `task_directory` or `task_list` should be set"
        )
    if options.task_list is not None:
        for identifier, handler in options.task_list.items():
            if not callable(handler):
                raise ConfigurationError(
                    f"Task {identifier!r} in `task_list` is not callable"
                )
        return TaskSource(task_list=options.task_list)
    if options.task_directory is not None:
        return TaskSource(directory=Path(options.task_directory))
    raise ConfigurationError(
        "You must specify either `task_list` or `task_directory`"
    )


def resolve_pool_source(options: RunnerOptions, settings: Settings) -> PoolSource:
    """Select the connection pool source.

    Precedence: explicit pool > explicit connection string > ``DATABASE_URL``
    from *settings*.
    """
    check_pool_exclusivity(options)

    if options.connection_pool is not None:
        return PoolSource(PoolSourceKind.ADOPTED, engine=options.connection_pool)

    if options.connection_string is not None:
        if not options.connection_string.strip():
            raise ConfigurationError("`connection_string` is empty")
        return PoolSource(PoolSourceKind.CONNECTION_STRING, url=options.connection_string)

    if settings.DATABASE_URL:
        return PoolSource(PoolSourceKind.ENVIRONMENT, url=settings.DATABASE_URL)

    raise ConfigurationError(
        "No connection information available: you must either specify "
        "`connection_pool` or `connection_string`, or make the `DATABASE_URL` "
        "environment variable available."
    )
