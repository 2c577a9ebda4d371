"""Runner entry points: ``schema_only``, ``run_once`` and ``run``.

Each entry point validates its options before touching any resource, then
acquires resources into a :class:`ResourceRegistry`.  If any step from task
loading through migration fails, everything registered so far is released
and the original error is re-raised.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncEngine

from jobrunner.config import Settings, get_settings
from jobrunner.db.engine import WithConnection, acquire_pool, make_with_connection
from jobrunner.db.models import Job
from jobrunner.errors import AlreadyStoppedError, ReleaseError
from jobrunner.migrate import ensure_schema
from jobrunner.options import (
    RunnerOptions,
    TaskSource,
    resolve_pool_source,
    resolve_task_source,
)
from jobrunner.resources import ResourceRegistry
from jobrunner.tasks import TaskList, load_tasks
from jobrunner.worker.enqueue import make_add_job
from jobrunner.worker.loop import WorkerPool, run_task_list, run_task_list_once

logger = logging.getLogger("jobrunner.runner")


@dataclass
class ResolvedRuntime:
    tasks: TaskList
    engine: AsyncEngine
    with_connection: WithConnection
    registry: ResourceRegistry


async def _load_task_list(source: TaskSource, registry: ResourceRegistry) -> TaskList:
    if source.task_list is not None:
        return source.task_list
    watched = await load_tasks(source.directory)
    registry.add("task directory", watched.release)
    return watched.tasks


async def _process_options(options: RunnerOptions, settings: Settings) -> ResolvedRuntime:
    task_source = resolve_task_source(options)
    pool_source = resolve_pool_source(options, settings)

    registry = ResourceRegistry()
    async with registry.rollback_on_error():
        tasks = await _load_task_list(task_source, registry)
        engine = await acquire_pool(pool_source, registry, settings)
        await ensure_schema(engine, settings)

    return ResolvedRuntime(tasks, engine, make_with_connection(engine), registry)


async def schema_only(options: RunnerOptions, settings: Settings | None = None) -> None:
    """Install or upgrade the job schema, then release everything."""
    _settings = settings or get_settings()
    pool_source = resolve_pool_source(options, _settings)

    registry = ResourceRegistry()
    async with registry.closing():
        engine = await acquire_pool(pool_source, registry, _settings)
        await ensure_schema(engine, _settings)
    logger.info("Job schema installed")


async def run_once(options: RunnerOptions, settings: Settings | None = None) -> None:
    """Run every currently runnable job once, then release everything."""
    _settings = settings or get_settings()
    runtime = await _process_options(options, _settings)

    async with runtime.registry.closing():
        async with runtime.with_connection() as conn:
            await run_task_list_once(runtime.tasks, conn, options, _settings)


async def run(options: RunnerOptions, settings: Settings | None = None) -> "Runner":
    """Start a long-running worker pool and return its :class:`Runner`."""
    _settings = settings or get_settings()
    runtime = await _process_options(options, _settings)

    async with runtime.registry.rollback_on_error():
        worker_pool = run_task_list(runtime.tasks, runtime.engine, options, _settings)

    return Runner(
        worker_pool,
        make_add_job(runtime.with_connection, _settings),
        runtime.registry,
    )


class RunnerState(str, enum.Enum):
    ACTIVE = "active"
    STOPPED = "stopped"


class Runner:
    """Control object for a running worker pool.

    ``ACTIVE`` from construction; ``stop()`` moves it to ``STOPPED`` exactly
    once.  After that, ``stop()`` and ``add_job()`` raise
    :class:`AlreadyStoppedError`.
    """

    def __init__(
        self,
        worker_pool: WorkerPool,
        add_job: Callable[..., Awaitable[Job]],
        registry: ResourceRegistry,
    ) -> None:
        self._worker_pool = worker_pool
        self._add_job = add_job
        self._registry = registry
        self._state = RunnerState.ACTIVE

    @property
    def state(self) -> RunnerState:
        return self._state

    @property
    def promise(self) -> asyncio.Task:
        """Completes when the worker pool exits, raising if it crashed."""
        return self._worker_pool.promise

    async def add_job(self, identifier: str, payload: Any = None, **spec: Any) -> Job:
        if self._state is RunnerState.STOPPED:
            raise AlreadyStoppedError("Cannot add a job: runner is stopped")
        return await self._add_job(identifier, payload, **spec)

    async def stop(self) -> None:
        # Check and transition happen before the first await.
        if self._state is RunnerState.STOPPED:
            raise AlreadyStoppedError("Runner is already stopped")
        self._state = RunnerState.STOPPED

        errors: list[Exception] = []
        try:
            await self._worker_pool.release()
        except Exception as exc:
            logger.error("Failed to release worker pool: %s", exc, exc_info=True)
            errors.append(exc)
        errors.extend(await self._registry.release_all())

        if errors:
            raise ReleaseError(f"{len(errors)} release action(s) failed while stopping", errors)
        logger.info("Runner stopped")
