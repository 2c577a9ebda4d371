"""Exceptions raised by the runner bootstrap layer."""

from __future__ import annotations


class JobRunnerError(Exception):
    """Base class for all jobrunner errors."""


class ConfigurationError(JobRunnerError):
    """Invalid or ambiguous runner options.

    Always raised before any resource (pool, task modules) is acquired.
    """


class DatabaseConnectionError(JobRunnerError, ConnectionError):
    """A connection could not be checked out of the pool."""


class MigrationError(JobRunnerError):
    """Schema preparation failed; the underlying error is the ``__cause__``."""


class AlreadyStoppedError(JobRunnerError):
    """The runner has already been stopped."""


class ReleaseError(JobRunnerError):
    """One or more release actions failed while stopping a runner.

    Every release was attempted; ``errors`` holds the collected failures.
    """

    def __init__(self, message: str, errors: list[Exception]) -> None:
        super().__init__(message)
        self.errors = errors
