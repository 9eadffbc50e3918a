"""Logging configuration for pullagent.

Every scheduled job writes to its own log file under ``log_dir`` so an
operator can inspect one job without the others' noise.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler

import structlog

from pullagent.config import get_settings

_MAX_LOG_BYTES = 5 * 1024 * 1024
_LOG_BACKUPS = 3


def setup_logging(job: str | None = None) -> None:
    """Configure structured logging, optionally with a per-job log file."""
    settings = get_settings()

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    renderer = (
        structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
        if settings.is_development
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", level=log_level, handlers=[])
    root = logging.getLogger()
    root.setLevel(log_level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(console)

    if job and settings.log_to_file:
        log_path = settings.job_log_path(job)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_path, maxBytes=_MAX_LOG_BYTES, backupCount=_LOG_BACKUPS, encoding="utf-8"
            )
        except OSError as exc:
            root.warning("log file unavailable: %s (%s)", log_path, exc)
        else:
            file_handler.setFormatter(logging.Formatter("%(message)s"))
            root.addHandler(file_handler)

    if job:
        structlog.contextvars.bind_contextvars(job=job)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)
