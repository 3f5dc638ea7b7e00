"""Logging configuration

structlog is used throughout the package with event-style names
(``logger.info("audit_flush_completed", count=10)``). This module only
decides how those events are rendered.
"""

import logging
import sys
from typing import Optional

import structlog


def configure_logging(level: str = "INFO", json_format: Optional[bool] = None) -> None:
    """
    Configure structlog and the stdlib root logger

    Args:
        level: Minimum log level name
        json_format: Render JSON lines (None = JSON unless attached to a TTY)
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    if json_format is None:
        json_format = not sys.stderr.isatty()

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=log_level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
        cache_logger_on_first_use=False,
    )
