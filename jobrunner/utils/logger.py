import logging
import sys
from pythonjsonlogger import jsonlogger
import contextvars

# Context variables for correlation, set by the worker while a job runs
ctx_worker_id = contextvars.ContextVar("worker_id", default=None)
ctx_job_id = contextvars.ContextVar("job_id", default=None)
ctx_task_identifier = contextvars.ContextVar("task_identifier", default=None)

_CONTEXT_FIELDS = (
    ("worker_id", ctx_worker_id),
    ("job_id", ctx_job_id),
    ("task_identifier", ctx_task_identifier),
)

# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ("sqlalchemy", "alembic", "asyncio", "aiosqlite")


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        for field, var in _CONTEXT_FIELDS:
            value = var.get()
            if value:
                log_record[field] = value


def setup_logger(log_format: str = "text", log_level: str = "INFO"):
    """Configure the root logger for the runner process.

    ``json`` output carries the worker/job correlation fields; ``text`` is
    meant for local runs.
    """
    root_logger = logging.getLogger()

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)

    if log_format.lower() == "json":
        formatter = CorrelationJsonFormatter(
            '%(asctime)s %(levelname)s %(name)s %(message)s',
            rename_fields={"levelname": "level", "asctime": "timestamp"}
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger
