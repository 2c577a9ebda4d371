"""Database-backed background job runner.

    runner = await run(RunnerOptions(connection_string=url, task_list=tasks))
    await runner.add_job("send_email", {"to": "a@example.com"})
    ...
    await runner.stop()
"""

from jobrunner.errors import (
    AlreadyStoppedError,
    ConfigurationError,
    DatabaseConnectionError,
    JobRunnerError,
    MigrationError,
    ReleaseError,
)
from jobrunner.options import RunnerOptions
from jobrunner.runner import Runner, RunnerState, run, run_once, schema_only
from jobrunner.tasks import JobHelpers, TaskList

__all__ = [
    "AlreadyStoppedError",
    "ConfigurationError",
    "DatabaseConnectionError",
    "JobHelpers",
    "JobRunnerError",
    "MigrationError",
    "ReleaseError",
    "Runner",
    "RunnerOptions",
    "RunnerState",
    "TaskList",
    "run",
    "run_once",
    "schema_only",
]

__version__ = "0.1.0"
