"""Structured logging for the sync engine: structlog over stdlib logging.

Every module logs through get_logger(__name__) with snake_case event names.
Background loops bind the symbol (and source or mode) they work on with
log_context(), so each line from a poller or backfill carries it without
repeating it at every call site. Bound values live in contextvars and stay
local to the asyncio task that bound them.
"""

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

# Chatty third-party loggers; httpx logs every request at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "websockets", "aiosqlite")


def _renderer(log_format: str) -> structlog.types.Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def setup_logging(log_level: str = "INFO", log_format: str | None = None) -> None:
    """Configure structlog and the root stdlib logger.

    Args:
        log_level: Root level name, e.g. "DEBUG".
        log_format: "json" or "console"; defaults to the LOG_FORMAT
            environment variable, then "console".
    """
    fmt = (log_format or os.environ.get("LOG_FORMAT", "console")).lower()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(fmt),
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def log_context(**values: object) -> Iterator[None]:
    """Bind key/values to every log line emitted by the current task."""
    with structlog.contextvars.bound_contextvars(**values):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a bound structlog logger with the given name."""
    return structlog.get_logger(name)
