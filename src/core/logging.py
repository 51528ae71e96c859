"""Structured logging setup — structlog on top of the stdlib logging module."""

from __future__ import annotations

import logging
import sys

import structlog

from config.settings import get_settings


def setup_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """Configure structlog once per process.

    Production renders one JSON object per line; development uses the
    colored console renderer.
    """
    settings = get_settings()
    level_name = level or settings.log_level
    if json_output is None:
        json_output = settings.hrsm_env == "prod"

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level_name),
    )

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to ``name``."""
    return structlog.get_logger(name)
