"""Structured logging setup shared by the API, services, and scripts."""
from __future__ import annotations

import logging
import sys

import structlog


_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


def configure_logging(level: str = "INFO", json_format: bool = False) -> None:
    """Configure structlog once per process.

    Console rendering is used for local runs; JSON lines when ``json_format``
    is set so log shippers can parse the key/value context.
    """
    numeric_level = _LEVELS.get((level or "INFO").strip().upper(), logging.INFO)
    renderer = structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


logger = structlog.get_logger("status_ledger")
