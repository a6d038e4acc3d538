"""structlog setup for finmail.

The server logs JSON lines, the CLI logs through the console renderer.
While a batch job runs its id is held in a contextvar and stamped on every
log line as batch_job_id.

Usage:
    from finmail.core.logging import bind_batch_job, get_logger

    logger = get_logger(__name__)

    bind_batch_job(job.id)
    logger.info("batch_item_completed", item_id=42)
    bind_batch_job(None)
"""

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog

_batch_job_id: ContextVar[int | None] = ContextVar("batch_job_id", default=None)

# Chatty at INFO/DEBUG: one line per Google request or SQL statement
QUIET_LOGGERS = ("urllib3", "aiosqlite")


def bind_batch_job(job_id: int | None) -> None:
    """Tag subsequent log lines in this context with a batch job id (None clears)."""
    _batch_job_id.set(job_id)


def add_batch_job_id(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Processor: add batch_job_id while a job is bound."""
    job_id = _batch_job_id.get()
    if job_id is not None:
        event_dict["batch_job_id"] = job_id
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog over stdlib logging.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines for the server; False for the CLI console
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_batch_job_id,
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
