"""Structured logging for batchledger.

One configuration serves both structlog loggers (the package's own modules)
and plain stdlib loggers (SQLAlchemy, openai, httpx): records from either are
rendered by the same structlog ProcessorFormatter, as console text or as one
JSON object per line.

Logs go to stderr so that command output on stdout (status reports, JSON
results) stays machine-readable. Engine code binds ``job_id`` with
``structlog.contextvars.bound_contextvars`` for the duration of a run, and
every line inside the run carries it.
"""

import logging
import os
import sys
from typing import Any, TextIO

import structlog
from structlog.stdlib import ProcessorFormatter

# HTTP client and SQL echo loggers chatter per request at DEBUG.
# They stay at WARNING even under --verbose.
_NOISY_LOGGERS: tuple[str, ...] = (
    "openai",
    "openai._base_client",
    "httpx",
    "httpcore",
    "urllib3",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
)

_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _add_pid(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Stamp the process id; lock ownership is reported by pid."""
    event_dict.setdefault("pid", os.getpid())
    return event_dict


def _shared_processors() -> list[Any]:
    """Processors run on every record, whichever logging API produced it."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]


def _renderers(json_output: bool, stream: TextIO) -> list[Any]:
    if json_output:
        return [
            ProcessorFormatter.remove_processors_meta,
            _add_pid,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    return [
        ProcessorFormatter.remove_processors_meta,
        structlog.dev.ConsoleRenderer(colors=stream.isatty()),
    ]


def configure_logging(
    *,
    json_output: bool = False,
    level: str = "INFO",
    stream: TextIO | None = None,
) -> None:
    """Configure structlog and the stdlib root logger.

    Safe to call repeatedly; each call replaces the previous handlers.

    Args:
        json_output: Emit JSON lines instead of console text
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        stream: Destination (defaults to the current sys.stderr)

    Raises:
        ValueError: If level is not a known level name
    """
    level_name = level.upper()
    if level_name not in _LEVELS:
        raise ValueError(f"Unknown log level {level!r}; expected one of {sorted(_LEVELS)}")
    log_level = logging.getLevelName(level_name)
    out = stream if stream is not None else sys.stderr

    shared = _shared_processors()
    structlog.configure(
        processors=[*shared, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Tests reconfigure logging; cached loggers would keep the old chain
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(out)
    handler.setFormatter(ProcessorFormatter(processors=_renderers(json_output, out), foreign_pre_chain=shared))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)

    noisy_level = max(log_level, logging.WARNING)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(noisy_level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Logger for a module (typically ``__name__``)."""
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger
