"""Worker heartbeat — renews a job's ``locked_until`` while it is executing.

The heartbeat task runs as a sibling asyncio.Task alongside the task handler
and renews ``locked_until = now() + lock_duration`` every ``interval``
seconds, proving the worker is still alive so the job is not reclaimed as
stalled by another worker.

Usage:
    task = asyncio.create_task(heartbeat_loop(session_factory, job_id, worker_id, 15, 60))
    try:
        ...run the task handler...
    finally:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from jobrunner.db.models import Job

logger = logging.getLogger("jobrunner.worker.heartbeat")


async def heartbeat_loop(
    session_factory: Callable[[], AsyncSession],
    job_id: int,
    worker_id: str,
    interval: float,
    lock_duration: float,
) -> None:
    """Continuously renew *job_id*'s lock until cancelled.

    Args:
        session_factory: Opens a session on a connection of its own.
        job_id:          The Job primary key.
        worker_id:       Only a lock held by this worker is renewed.
        interval:        Seconds between heartbeat ticks.
        lock_duration:   New ``locked_until`` = now() + lock_duration (seconds).
    """
    logger.debug("Heartbeat started for job %s", job_id)

    while True:
        await asyncio.sleep(interval)
        try:
            now = datetime.now(timezone.utc)
            new_locked_until = now + timedelta(seconds=lock_duration)

            async with session_factory() as db:
                await db.execute(
                    update(Job)
                    .where(
                        Job.id == job_id,
                        Job.status == "running",
                        Job.locked_by == worker_id,
                    )
                    .values(locked_until=new_locked_until, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
            logger.debug("Heartbeat renewed lock for job %s until %s", job_id, new_locked_until)

        except asyncio.CancelledError:
            logger.debug("Heartbeat cancelled for job %s", job_id)
            raise
        except Exception:
            logger.warning("Heartbeat error for job %s (will retry)", job_id, exc_info=True)
