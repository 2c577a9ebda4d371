"""Task handlers: the registry type and the directory loader.

A task directory holds one module per task::

    tasks/
        send_email.py      → task identifier "send_email"
        resize_image.py    → task identifier "resize_image"

Each module exposes a module-level ``task`` callable, invoked as
``task(payload, helpers)``; it may be a coroutine function.
"""

from __future__ import annotations

import asyncio
import importlib.util
import logging
import sys
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping

from jobrunner.errors import ConfigurationError

if TYPE_CHECKING:
    from jobrunner.db.engine import WithConnection
    from jobrunner.db.models import Job

logger = logging.getLogger("jobrunner.tasks")

Task = Callable[[Any, "JobHelpers"], "Awaitable[None] | None"]
TaskList = Mapping[str, Task]


@dataclass
class JobHelpers:
    """Second argument passed to every task handler."""

    job: "Job"
    logger: logging.Logger
    with_connection: "WithConnection"
    add_job: Callable[..., Awaitable["Job"]]


@dataclass
class WatchedTasks:
    tasks: dict[str, Task]
    module_names: list[str] = field(default_factory=list)

    async def release(self) -> None:
        """Forget the modules imported for this task directory."""
        for name in self.module_names:
            sys.modules.pop(name, None)
        self.module_names.clear()


def _load_directory(directory: Path) -> WatchedTasks:
    if not directory.is_dir():
        raise ConfigurationError(f"Task directory {str(directory)!r} does not exist")

    watched = WatchedTasks(tasks={})
    prefix = f"jobrunner_tasks_{uuid.uuid4().hex[:8]}"
    for path in sorted(directory.glob("*.py")):
        if path.name.startswith("_"):
            continue
        module_name = f"{prefix}_{path.stem}"
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            logger.warning("Skipping %s: not importable", path)
            continue
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        watched.module_names.append(module_name)
        try:
            spec.loader.exec_module(module)
        except Exception:
            for name in watched.module_names:
                sys.modules.pop(name, None)
            raise

        handler = getattr(module, "task", None)
        if not callable(handler):
            logger.warning("Skipping %s: no callable `task` defined", path)
            continue
        watched.tasks[path.stem] = handler

    logger.info("Loaded %d task(s) from %s", len(watched.tasks), directory)
    return watched


async def load_tasks(directory: str | Path) -> WatchedTasks:
    """Import every task module in *directory* off the event loop."""
    return await asyncio.to_thread(_load_directory, Path(directory))
