"""Tests for loading task handlers from a directory."""

from __future__ import annotations

import sys

import pytest

from jobrunner.errors import ConfigurationError
from jobrunner.tasks import load_tasks


@pytest.mark.asyncio
async def test_loads_one_task_per_module(task_dir):
    watched = await load_tasks(task_dir)

    assert set(watched.tasks) == {"send_email", "resize_image"}
    assert all(callable(handler) for handler in watched.tasks.values())
    await watched.release()


@pytest.mark.asyncio
async def test_module_can_be_called_as_task(task_dir):
    watched = await load_tasks(str(task_dir))

    await watched.tasks["send_email"]({"to": "a@example.com"}, None)

    (name,) = [n for n in watched.module_names if n.endswith("_send_email")]
    module = sys.modules[name]
    assert module.CALLS == [{"to": "a@example.com"}]
    await watched.release()


@pytest.mark.asyncio
async def test_release_forgets_imported_modules(task_dir):
    watched = await load_tasks(task_dir)
    names = list(watched.module_names)
    assert names and all(name in sys.modules for name in names)

    await watched.release()

    assert not any(name in sys.modules for name in names)
    assert watched.module_names == []


@pytest.mark.asyncio
async def test_missing_directory_is_a_configuration_error(tmp_path):
    with pytest.raises(ConfigurationError, match="does not exist"):
        await load_tasks(tmp_path / "nope")


@pytest.mark.asyncio
async def test_import_error_propagates_and_leaves_nothing_behind(tmp_path):
    directory = tmp_path / "tasks"
    directory.mkdir()
    (directory / "broken.py").write_text("raise ImportError('missing dependency')\n")
    before = set(sys.modules)

    with pytest.raises(ImportError, match="missing dependency"):
        await load_tasks(directory)

    assert not [n for n in set(sys.modules) - before if n.startswith("jobrunner_tasks_")]
