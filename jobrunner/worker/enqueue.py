"""Helpers for enqueuing jobs.

Two entry points:
  add_job(session, identifier, ...)  — add a Job to *session*; the caller
                                       commits.  Lets a job land atomically
                                       with the caller's own writes.
  make_add_job(with_connection)      — returns an async ``add_job`` that
                                       borrows a connection, enqueues and
                                       commits on its own.  This is what
                                       ``Runner.add_job`` and task helpers use.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jobrunner.config import Settings, get_settings
from jobrunner.db.engine import WithConnection
from jobrunner.db.models import Job


async def add_job(
    session: AsyncSession,
    identifier: str,
    payload: Any = None,
    *,
    queue_name: str | None = None,
    run_at: datetime | None = None,
    max_attempts: int | None = None,
    priority: int = 0,
    key: str | None = None,
    settings: Settings | None = None,
) -> Job:
    """Add a queued Job for the task *identifier* to *session*.

    The job is NOT committed here — the caller must ``await session.commit()``.

    Args:
        session:      Active AsyncSession.
        identifier:   Task identifier the job is dispatched to.
        payload:      JSON-serialisable payload handed to the task.
        queue_name:   Optional named queue.
        run_at:       Earliest execution time (default: now).
        max_attempts: Override WORKER_MAX_ATTEMPTS for this specific job.
        priority:     Higher = picked first by the worker (default 0).
        key:          De-duplication key.  If a queued or retrying job with
                      the same key exists it is replaced in-place.
    """
    _settings = settings or get_settings()
    now = datetime.now(timezone.utc)
    _max_att = max_attempts if max_attempts is not None else _settings.WORKER_MAX_ATTEMPTS

    if key is not None:
        result = await session.execute(select(Job).where(Job.key == key))
        existing: Job | None = result.scalar_one_or_none()
        if existing is not None and existing.status in ("queued", "retrying"):
            existing.task_identifier = identifier
            existing.payload = payload
            existing.queue_name = queue_name
            existing.run_at = run_at or now
            existing.max_attempts = _max_att
            existing.priority = priority
            existing.attempts = 0
            existing.last_error = None
            existing.status = "queued"
            existing.updated_at = now
            return existing
        if existing is not None:
            # Running or permanently failed: release the key for the new job.
            existing.key = None
            await session.flush()

    job = Job(
        task_identifier=identifier,
        payload=payload,
        queue_name=queue_name,
        run_at=run_at or now,
        status="queued",
        priority=priority,
        attempts=0,
        max_attempts=_max_att,
        key=key,
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    return job


def make_add_job(
    with_connection: WithConnection,
    settings: Settings | None = None,
) -> Callable[..., Awaitable[Job]]:
    """Return an ``add_job`` coroutine function bound to *with_connection*."""

    async def _add_job(identifier: str, payload: Any = None, **spec: Any) -> Job:
        spec.setdefault("settings", settings)
        async with with_connection() as conn:
            async with AsyncSession(bind=conn, expire_on_commit=False) as session:
                job = await add_job(session, identifier, payload, **spec)
                await session.commit()
        return job

    return _add_job
