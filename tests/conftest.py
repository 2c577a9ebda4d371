"""Shared fixtures for jobrunner tests."""

from __future__ import annotations

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

from jobrunner.config import Settings


@pytest.fixture
def sqlite_url(tmp_path) -> str:
    """File-backed SQLite URL; each test gets its own database."""
    return f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}"


@pytest.fixture
def settings() -> Settings:
    """Settings with no DATABASE_URL fallback and fast worker timings."""
    return Settings(
        _env_file=None,
        DATABASE_URL=None,
        WORKER_POLL_INTERVAL=0.05,
        WORKER_RETRY_DELAY_SECONDS=60.0,
        WORKER_HEARTBEAT_INTERVAL=0.05,
    )


@pytest.fixture
def mock_db():
    """AsyncSession stand-in with async execute/commit."""
    db = AsyncMock()
    db.execute = AsyncMock()
    db.commit = AsyncMock()
    db.__aenter__ = AsyncMock(return_value=db)
    db.__aexit__ = AsyncMock(return_value=None)
    return db


@pytest.fixture
def fake_session(mock_db):
    """Session factory yielding ``mock_db``."""

    @asynccontextmanager
    async def _factory():
        yield mock_db

    return _factory


@pytest.fixture
def task_dir(tmp_path):
    """A task directory with two tasks, a private helper and a non-task module."""
    directory = tmp_path / "tasks"
    directory.mkdir()
    (directory / "send_email.py").write_text(
        "CALLS = []\n"
        "\n"
        "async def task(payload, helpers):\n"
        "    CALLS.append(payload)\n"
    )
    (directory / "resize_image.py").write_text(
        "def task(payload, helpers):\n"
        "    return None\n"
    )
    (directory / "_shared.py").write_text("VALUE = 1\n")
    (directory / "notes.py").write_text("task = 'not callable'\n")
    return directory


@pytest.fixture
def worker_pool():
    """Stand-in for the WorkerPool returned by run_task_list()."""
    pool = MagicMock()
    pool.release = AsyncMock()
    pool.promise = MagicMock()
    return pool
