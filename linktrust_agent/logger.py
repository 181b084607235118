"""
structlog setup. Modules log through ``get_logger(__name__)`` with a
snake_case event and keyword context, e.g.
``logger.info("cache_lookup", hits=3, misses=2)``.

``LOG_LEVEL`` picks the threshold; ``LOG_FORMAT=console`` swaps the JSON
renderer for the dev console one.
"""
from __future__ import annotations

import logging
import os
import sys
from typing import Any

import structlog


def configure_structlog() -> None:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    fmt = os.getenv("LOG_FORMAT", "json").strip().lower()

    renderer: Any
    if fmt == "console":
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


if not structlog.is_configured():
    configure_structlog()


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name).bind(logger=name)
