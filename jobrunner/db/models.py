"""ORM models — the job queue table."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Job(Base):
    """A queued unit of work for the handler registered under ``task_identifier``.

    Status lifecycle: queued → running → (row deleted on success)
                                       → retrying → running …
                                       → failed (attempts exhausted)
    """

    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_poll", "status", "priority", "run_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    queue_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    task_identifier: Mapped[str] = mapped_column(String(256), nullable=False)
    payload: Mapped[Any] = mapped_column(JSON, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="queued")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=25)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    key: Mapped[str | None] = mapped_column(String(512), nullable=True, unique=True)
    locked_by: Mapped[str | None] = mapped_column(String(256), nullable=True)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return f"<Job id={self.id} task={self.task_identifier!r} status={self.status}>"
