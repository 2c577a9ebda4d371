"""Tests for Settings helpers and the logging setup."""

from __future__ import annotations

import json
import logging

import pytest

from jobrunner.config import Settings, dialect_of
from jobrunner.utils.logger import (
    CorrelationJsonFormatter,
    ctx_job_id,
    ctx_task_identifier,
    ctx_worker_id,
    setup_logger,
)


@pytest.mark.parametrize(
    "url, expected",
    [
        ("postgresql+asyncpg://u:p@localhost/jobs", "postgres"),
        ("postgres://u:p@localhost/jobs", "postgres"),
        ("sqlite+aiosqlite:///./jobs.db", "sqlite"),
        ("mysql+aiomysql://u:p@localhost/jobs", "mysql"),
    ],
)
def test_dialect_of(url, expected):
    assert dialect_of(url) == expected


class TestSettings:
    def test_defaults(self):
        s = Settings(_env_file=None, DATABASE_URL=None)
        assert s.WORKER_CONCURRENCY == 1
        assert s.MIGRATIONS_TABLE == "jobrunner_migrations"
        assert not s.is_postgres
        assert not s.is_sqlite
        assert s.sync_db_url() is None

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://u:p@db/jobs")
        monkeypatch.setenv("WORKER_CONCURRENCY", "4")

        s = Settings(_env_file=None)

        assert s.is_postgres
        assert s.WORKER_CONCURRENCY == 4

    @pytest.mark.parametrize(
        "url, expected",
        [
            ("postgresql+asyncpg://u:p@db/jobs", "postgresql://u:p@db/jobs"),
            ("sqlite+aiosqlite:///./jobs.db", "sqlite:///./jobs.db"),
            ("postgresql://u:p@db/jobs", "postgresql://u:p@db/jobs"),
        ],
    )
    def test_sync_db_url(self, url, expected):
        assert Settings(_env_file=None, DATABASE_URL=url).sync_db_url() == expected


class TestLogger:
    def _record(self, message="hello"):
        return logging.LogRecord("jobrunner.test", logging.INFO, __file__, 1, message, None, None)

    def test_json_formatter_adds_job_context(self):
        formatter = CorrelationJsonFormatter("%(levelname)s %(name)s %(message)s")
        tokens = (
            ctx_worker_id.set("worker-1"),
            ctx_job_id.set("42"),
            ctx_task_identifier.set("send_email"),
        )
        try:
            payload = json.loads(formatter.format(self._record()))
        finally:
            for var, token in zip((ctx_worker_id, ctx_job_id, ctx_task_identifier), tokens):
                var.reset(token)

        assert payload["message"] == "hello"
        assert payload["worker_id"] == "worker-1"
        assert payload["job_id"] == "42"
        assert payload["task_identifier"] == "send_email"

    def test_json_formatter_omits_unset_context(self):
        formatter = CorrelationJsonFormatter("%(levelname)s %(message)s")
        payload = json.loads(formatter.format(self._record()))

        assert "job_id" not in payload
        assert "worker_id" not in payload

    def test_setup_logger_replaces_handlers(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logger("json", "debug")
            setup_logger("json", "debug")

            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, CorrelationJsonFormatter)
            assert root.level == logging.DEBUG
            assert logging.getLogger("sqlalchemy").level == logging.WARNING
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
