"""Worker job poll-and-execute loop.

Architecture
------------
The loop polls ``jobs`` for eligible rows, claims them atomically, then runs
each in a sibling asyncio.Task with a concurrent heartbeat task.

Claiming strategy (dialect-aware):
  PostgreSQL — ``SELECT … FOR UPDATE SKIP LOCKED`` in a single transaction.
               Correct under any number of concurrent workers.
  SQLite     — Optimistic UPDATE with a status guard (``WHERE status IN
               ('queued','retrying') AND id = ?``).

Job lifecycle:
  queued / retrying
    ↓   poll_and_claim()
  running  ← heartbeat renews locked_until every heartbeat_interval s
    ↓   execute_job()
  (deleted) on success
  failed    on final failure — attempts >= max_attempts
  retrying  on retriable failure — run_at pushed back by a linear delay

Two drivers share these pieces:
  run_task_list()       — long-running pool bound to an engine; returns a
                          WorkerPool whose release() drains and stops it.
  run_task_list_once()  — works through every runnable job on one borrowed
                          connection, then returns.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import socket
import uuid
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession, async_sessionmaker

from jobrunner.config import Settings, get_settings
from jobrunner.db.engine import WithConnection, make_with_connection
from jobrunner.db.models import Job
from jobrunner.options import RunnerOptions
from jobrunner.tasks import JobHelpers, TaskList
from jobrunner.utils.logger import ctx_job_id, ctx_task_identifier, ctx_worker_id
from jobrunner.worker.enqueue import make_add_job

logger = logging.getLogger("jobrunner.worker.loop")

SessionFactory = Callable[[], AsyncSession]

_RUNNABLE = ("queued", "retrying")


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class WorkerConfig:
    worker_id: str
    concurrency: int
    poll_interval: float
    retry_delay: float
    lock_duration: float
    heartbeat_interval: float
    max_attempts: int

    @classmethod
    def from_options(cls, options: RunnerOptions, settings: Settings) -> "WorkerConfig":
        def pick(value, default):
            return value if value is not None else default

        return cls(
            worker_id=options.worker_id or _default_worker_id(),
            concurrency=pick(options.concurrency, settings.WORKER_CONCURRENCY),
            poll_interval=pick(options.poll_interval, settings.WORKER_POLL_INTERVAL),
            retry_delay=pick(options.retry_delay, settings.WORKER_RETRY_DELAY_SECONDS),
            lock_duration=pick(options.lock_duration, settings.WORKER_LOCK_DURATION_SECONDS),
            heartbeat_interval=pick(options.heartbeat_interval, settings.WORKER_HEARTBEAT_INTERVAL),
            max_attempts=pick(options.max_attempts, settings.WORKER_MAX_ATTEMPTS),
        )


@dataclass
class WorkerContext:
    """Everything a claim/execute cycle needs, for either driver."""

    tasks: TaskList
    session_factory: SessionFactory
    with_connection: WithConnection
    dialect: str
    config: WorkerConfig
    settings: Settings
    heartbeat: bool = True


# ─────────────────────────────────────────────────────────────────────────────
# Claim helpers
# ─────────────────────────────────────────────────────────────────────────────


async def _claim_jobs_postgres(
    session_factory: SessionFactory,
    worker_id: str,
    slots: int,
    lock_duration: float,
) -> list[Job]:
    """Claim up to *slots* jobs using FOR UPDATE SKIP LOCKED (PostgreSQL)."""
    now = datetime.now(timezone.utc)
    locked_until = now + timedelta(seconds=lock_duration)

    async with session_factory() as db:
        async with db.begin():
            result = await db.execute(
                select(Job.id)
                .where(Job.status.in_(_RUNNABLE), Job.run_at <= now)
                .order_by(Job.priority.desc(), Job.run_at.asc(), Job.id.asc())
                .limit(slots)
                .with_for_update(skip_locked=True)
            )
            job_ids = list(result.scalars().all())
            if not job_ids:
                return []

            # Claim all in one UPDATE
            await db.execute(
                update(Job)
                .where(Job.id.in_(job_ids))
                .values(
                    status="running",
                    locked_by=worker_id,
                    locked_until=locked_until,
                    attempts=Job.attempts + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )

        # Reload the claimed jobs to get full objects
        result2 = await db.execute(
            select(Job).where(Job.id.in_(job_ids)).order_by(Job.priority.desc(), Job.id.asc())
        )
        return list(result2.scalars().all())


async def _claim_jobs_sqlite(
    session_factory: SessionFactory,
    worker_id: str,
    slots: int,
    lock_duration: float,
) -> list[Job]:
    """Claim up to *slots* jobs using optimistic locking (SQLite / dev)."""
    now = datetime.now(timezone.utc)
    locked_until = now + timedelta(seconds=lock_duration)
    claimed: list[Job] = []

    async with session_factory() as db:
        result = await db.execute(
            select(Job)
            .where(Job.status.in_(_RUNNABLE), Job.run_at <= now)
            .order_by(Job.priority.desc(), Job.run_at.asc(), Job.id.asc())
            .limit(slots)
        )
        candidates = list(result.scalars().all())

        for job in candidates:
            # Optimistic claim: only update if status hasn't changed
            update_result = await db.execute(
                update(Job)
                .where(Job.id == job.id, Job.status.in_(_RUNNABLE))
                .values(
                    status="running",
                    locked_by=worker_id,
                    locked_until=locked_until,
                    attempts=Job.attempts + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if update_result.rowcount == 1:
                claimed.append(job)

        await db.commit()

    # Mirror the claim onto the detached objects
    for job in claimed:
        job.status = "running"
        job.locked_by = worker_id
        job.locked_until = locked_until
        job.attempts = (job.attempts or 0) + 1
    return claimed


async def poll_and_claim(ctx: WorkerContext, slots: int) -> list[Job]:
    """Return up to *slots* claimed Jobs ready for execution."""
    if slots <= 0:
        return []
    claim = _claim_jobs_postgres if ctx.dialect == "postgresql" else _claim_jobs_sqlite
    return await claim(ctx.session_factory, ctx.config.worker_id, slots, ctx.config.lock_duration)


# ─────────────────────────────────────────────────────────────────────────────
# Stalled-job recovery
# ─────────────────────────────────────────────────────────────────────────────


async def reclaim_stalled_jobs(ctx: WorkerContext) -> int:
    """Reset stalled jobs (lock expired while still running) back to retrying.

    Jobs that have exhausted max_attempts are marked ``failed`` instead.
    Returns the number of jobs reclaimed.
    """
    now = datetime.now(timezone.utc)
    reclaimed = 0

    async with ctx.session_factory() as db:
        result = await db.execute(
            select(Job).where(Job.status == "running", Job.locked_until < now)
        )
        stalled = list(result.scalars().all())

        for job in stalled:
            if (job.attempts or 0) >= (job.max_attempts or ctx.config.max_attempts):
                job.status = "failed"
                job.last_error = "Exceeded max_attempts — last lock expired without completion"
                logger.warning(
                    "Job %s (%s) permanently failed: max attempts exceeded",
                    job.id, job.task_identifier,
                )
            else:
                job.status = "retrying"
                job.run_at = now
                logger.info(
                    "Reclaimed stalled job %s (%s, attempt %d) from %s",
                    job.id, job.task_identifier, job.attempts, job.locked_by,
                )
            job.locked_by = None
            job.locked_until = None
            job.updated_at = now
            reclaimed += 1

        if reclaimed:
            await db.commit()

    return reclaimed


# ─────────────────────────────────────────────────────────────────────────────
# Job execution
# ─────────────────────────────────────────────────────────────────────────────


async def _run_handler(job: Job, ctx: WorkerContext) -> None:
    handler = ctx.tasks.get(job.task_identifier)
    if handler is None:
        raise LookupError(f"Unsupported task {job.task_identifier!r}")

    helpers = JobHelpers(
        job=job,
        logger=logging.getLogger(f"jobrunner.task.{job.task_identifier}"),
        with_connection=ctx.with_connection,
        add_job=make_add_job(ctx.with_connection, ctx.settings),
    )
    result = handler(job.payload, helpers)
    if inspect.isawaitable(result):
        await result


async def execute_job(job: Job, ctx: WorkerContext) -> None:
    """Execute a single claimed Job.

    - Heartbeat task (renews the lock) when ``ctx.heartbeat`` is set
    - Success: deletes the job row
    - Failure: marks job ``retrying`` (if attempts < max_attempts) or ``failed``
    """
    from jobrunner.worker.heartbeat import heartbeat_loop

    tokens = (
        ctx_worker_id.set(ctx.config.worker_id),
        ctx_job_id.set(str(job.id)),
        ctx_task_identifier.set(job.task_identifier),
    )

    heartbeat_task = None
    if ctx.heartbeat:
        heartbeat_task = asyncio.create_task(
            heartbeat_loop(
                ctx.session_factory,
                job.id,
                ctx.config.worker_id,
                interval=ctx.config.heartbeat_interval,
                lock_duration=ctx.config.lock_duration,
            )
        )

    try:
        logger.info(
            "Worker %s executing job %s (%s, attempt %d/%d)",
            ctx.config.worker_id, job.id, job.task_identifier,
            job.attempts, job.max_attempts or ctx.config.max_attempts,
        )
        await _run_handler(job, ctx)

        async with ctx.session_factory() as db:
            await db.execute(
                delete(Job)
                .where(Job.id == job.id)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        job.status = "done"
        job.locked_by = None
        job.locked_until = None

        logger.info("Job %s (%s) completed successfully", job.id, job.task_identifier)

    except Exception as exc:
        now = datetime.now(timezone.utc)
        attempts = job.attempts or 0
        max_att = job.max_attempts or ctx.config.max_attempts

        if attempts < max_att:
            retry_delay = ctx.config.retry_delay * attempts
            new_status = "retrying"
            new_run_at = now + timedelta(seconds=retry_delay)
            logger.warning(
                "Job %s (%s) failed (attempt %d/%d) — retrying in %.0fs: %s",
                job.id, job.task_identifier, attempts, max_att, retry_delay, exc,
            )
        else:
            new_status = "failed"
            new_run_at = now
            logger.error(
                "Job %s (%s) permanently failed after %d attempts: %s",
                job.id, job.task_identifier, attempts, exc,
            )

        async with ctx.session_factory() as db:
            await db.execute(
                update(Job)
                .where(Job.id == job.id)
                .values(
                    status=new_status,
                    locked_by=None,
                    locked_until=None,
                    run_at=new_run_at,
                    last_error=str(exc)[:2000],
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        # Mirror onto in-memory object (useful for callers and tests)
        job.status = new_status
        job.locked_by = None
        job.locked_until = None
        job.last_error = str(exc)[:2000]

    finally:
        if heartbeat_task is not None:
            heartbeat_task.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat_task
        for var, token in zip((ctx_worker_id, ctx_job_id, ctx_task_identifier), tokens):
            var.reset(token)


# ─────────────────────────────────────────────────────────────────────────────
# Main worker loop
# ─────────────────────────────────────────────────────────────────────────────


async def worker_loop(ctx: WorkerContext, stop_event: asyncio.Event) -> None:
    """Poll for jobs and execute up to ``concurrency`` at once until *stop_event* is set.

    On stop, jobs already executing are allowed to finish before returning.
    If the loop itself is cancelled, active jobs are cancelled too.
    """
    config = ctx.config
    logger.info(
        "Worker %s started (concurrency=%d, poll_interval=%.1fs, dialect=%s)",
        config.worker_id, config.concurrency, config.poll_interval, ctx.dialect,
    )

    active_tasks: set[asyncio.Task] = set()

    try:
        while not stop_event.is_set():
            try:
                active_tasks = {t for t in active_tasks if not t.done()}

                # Recover stalled jobs from any previous worker crash
                try:
                    stalled = await reclaim_stalled_jobs(ctx)
                    if stalled:
                        logger.debug("Reclaimed %d stalled job(s)", stalled)
                except Exception:
                    logger.exception("Error in stalled-job reclaim")

                available_slots = config.concurrency - len(active_tasks)
                if available_slots > 0:
                    try:
                        jobs = await poll_and_claim(ctx, available_slots)
                        for job in jobs:
                            task = asyncio.create_task(
                                execute_job(job, ctx),
                                name=f"job-{job.id}",
                            )
                            active_tasks.add(task)
                    except Exception:
                        logger.exception("Error claiming jobs")

            except Exception:
                logger.exception("Unexpected error in worker loop; will retry")

            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=config.poll_interval)

    except asyncio.CancelledError:
        logger.info("Worker %s cancelled (%d active tasks)…", config.worker_id, len(active_tasks))
        for task in active_tasks:
            task.cancel()
        if active_tasks:
            await asyncio.gather(*active_tasks, return_exceptions=True)
        raise

    logger.info("Worker %s shutting down (%d active tasks)…", config.worker_id, len(active_tasks))
    if active_tasks:
        await asyncio.gather(*active_tasks, return_exceptions=True)
    logger.info("Worker %s stopped", config.worker_id)


# ─────────────────────────────────────────────────────────────────────────────
# Drivers
# ─────────────────────────────────────────────────────────────────────────────


class WorkerPool:
    """Handle on a running :func:`worker_loop`.

    ``promise`` completes when the loop exits: normally after ``release()``,
    or with the loop's exception if it crashed.
    """

    def __init__(self, worker_id: str, promise: asyncio.Task, stop_event: asyncio.Event) -> None:
        self.worker_id = worker_id
        self.promise = promise
        self._stop_event = stop_event
        promise.add_done_callback(self._log_outcome)

    def _log_outcome(self, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning("Worker %s was cancelled", self.worker_id)
        elif task.exception() is not None:
            logger.error("Worker %s crashed: %s", self.worker_id, task.exception())

    async def release(self) -> None:
        """Stop polling, wait for active jobs to finish."""
        self._stop_event.set()
        await asyncio.wait({self.promise})


def run_task_list(
    tasks: TaskList,
    engine: AsyncEngine,
    options: RunnerOptions,
    settings: Settings | None = None,
) -> WorkerPool:
    """Start a long-running worker pool bound to *engine*."""
    _settings = settings or get_settings()
    ctx = WorkerContext(
        tasks=tasks,
        session_factory=async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False),
        with_connection=make_with_connection(engine),
        dialect=engine.dialect.name,
        config=WorkerConfig.from_options(options, _settings),
        settings=_settings,
    )
    stop_event = asyncio.Event()
    promise = asyncio.create_task(
        worker_loop(ctx, stop_event),
        name=f"worker-{ctx.config.worker_id}",
    )
    return WorkerPool(ctx.config.worker_id, promise, stop_event)


async def run_task_list_once(
    tasks: TaskList,
    conn: AsyncConnection,
    options: RunnerOptions,
    settings: Settings | None = None,
) -> int:
    """Run every currently runnable job, one at a time, on *conn*.

    Returns the number of jobs executed.
    """
    _settings = settings or get_settings()
    ctx = WorkerContext(
        tasks=tasks,
        session_factory=lambda: AsyncSession(bind=conn, expire_on_commit=False),
        # Handlers get connections of their own so they never share *conn*
        with_connection=make_with_connection(conn.engine),
        dialect=conn.dialect.name,
        config=WorkerConfig.from_options(options, _settings),
        settings=_settings,
        heartbeat=False,
    )

    await reclaim_stalled_jobs(ctx)
    executed = 0
    while True:
        jobs = await poll_and_claim(ctx, 1)
        if not jobs:
            break
        await execute_job(jobs[0], ctx)
        executed += 1

    logger.info("Worker %s processed %d job(s) in a single pass", ctx.config.worker_id, executed)
    return executed
