"""Logging setup for the presence admission service.

All modules obtain their logger through get_logger(__name__) and log a
constant event message with keyword context:

    logger.info("Policy cache hit", policy_id=policy_id, etag=etag)

configure_logging() wires structlog on top of the standard logging module so
that third-party libraries (SQLAlchemy, aiokafka, httpx) share the same output.
"""

import logging
import sys
from typing import Any

import structlog


def configure_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_format: Render JSON lines (production) instead of console output.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    renderer: Any = (
        structlog.processors.JSONRenderer()
        if json_format
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to the given module name.

    Args:
        name: Usually the calling module's __name__.

    Returns:
        A structlog BoundLogger.
    """
    return structlog.stdlib.get_logger(name)


def bind_request_context(**values: Any) -> None:
    """Bind values (e.g. correlation_id, user_id) to every log line of this task."""
    structlog.contextvars.bind_contextvars(**values)


def clear_request_context() -> None:
    """Drop all values bound by bind_request_context()."""
    structlog.contextvars.clear_contextvars()
