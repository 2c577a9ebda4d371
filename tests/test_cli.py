"""Tests for the command-line entrypoint."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.ext.asyncio import create_async_engine

import jobrunner.config
from jobrunner.cli import _run_until_stopped, build_parser, main, options_from_args
from jobrunner.options import RunnerOptions


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, settings):
    """Keep the developer's DATABASE_URL and logging setup out of the CLI tests."""
    monkeypatch.setattr(jobrunner.config, "settings", settings)
    with patch("jobrunner.cli.setup_logger"):
        yield settings


class TestParser:
    def test_defaults(self):
        args = build_parser().parse_args([])
        assert args.connection is None
        assert not args.schema_only
        assert not args.once
        assert args.jobs is None
        assert args.tasks_dir == Path("tasks")

    def test_short_flags(self):
        args = build_parser().parse_args(["-c", "sqlite+aiosqlite://", "-1", "-j", "4"])
        assert args.connection == "sqlite+aiosqlite://"
        assert args.once
        assert args.jobs == 4

    def test_options_from_args(self):
        args = build_parser().parse_args(["-c", "sqlite+aiosqlite://", "-j", "3", "--poll-interval", "0.5"])
        options = options_from_args(args)

        assert options.connection_string == "sqlite+aiosqlite://"
        assert options.concurrency == 3
        assert options.poll_interval == 0.5
        assert options.task_directory == Path("tasks")

    def test_schema_only_needs_no_tasks(self):
        options = options_from_args(build_parser().parse_args(["--schema-only"]))
        assert options.task_directory is None


def test_schema_only_installs_schema(sqlite_url):
    assert main(["--schema-only", "-c", sqlite_url]) == 0

    engine = create_async_engine(sqlite_url)

    async def _tables():
        async with engine.connect() as conn:
            names = await conn.run_sync(lambda c: sa_inspect(c).get_table_names())
        await engine.dispose()
        return names

    assert "jobs" in asyncio.run(_tables())


def test_once_with_empty_queue(sqlite_url, task_dir):
    assert main(["--once", "-c", sqlite_url, "--tasks-dir", str(task_dir)]) == 0


def test_missing_connection_exits_with_error():
    assert main([]) == 1


def test_missing_task_directory_exits_with_error(sqlite_url, tmp_path):
    assert main(["--once", "-c", sqlite_url, "--tasks-dir", str(tmp_path / "nope")]) == 1


def test_sync_driver_url_exits_with_error(tmp_path):
    assert main(["--schema-only", "-c", f"sqlite:///{tmp_path / 'jobs.db'}"]) == 1


@pytest.mark.asyncio
async def test_run_until_stopped_leaves_no_pending_tasks():
    async def _exit_early():
        return None

    runner = MagicMock()
    runner.promise = asyncio.create_task(_exit_early())
    runner.stop = AsyncMock()

    with patch("jobrunner.cli.run", AsyncMock(return_value=runner)):
        await _run_until_stopped(RunnerOptions(task_list={}))

    runner.stop.assert_awaited_once()
    pending = [t for t in asyncio.all_tasks() if t is not asyncio.current_task() and not t.done()]
    assert pending == []
