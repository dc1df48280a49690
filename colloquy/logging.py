"""Logging configuration for Colloquy."""

import logging
import sys

import structlog

from colloquy.config import get_config


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Configure structured logging for Colloquy.

    Args:
        level: Optional level override (defaults to ``config.logging.level``)
        fmt: Optional renderer override, ``console`` or ``json``
    """
    config = get_config()

    log_level = getattr(logging, (level or config.logging.level).upper(), logging.INFO)
    renderer = (fmt or config.logging.format).lower()

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if renderer == "console":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()
