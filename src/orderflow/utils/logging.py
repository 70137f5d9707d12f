"""Logging configuration for the Orderflow domain."""

import logging
import os

import structlog

_configured = False


def configure_logging(level=None, fmt=None):
    """Configure structlog once for the process.

    ``ORDERFLOW_LOG_LEVEL`` and ``ORDERFLOW_LOG_FORMAT`` (``console`` or
    ``json``) are used when arguments are not given.
    """
    global _configured
    if _configured:
        return

    level_name = (level or os.environ.get("ORDERFLOW_LOG_LEVEL", "INFO")).upper()
    fmt = fmt or os.environ.get("ORDERFLOW_LOG_FORMAT", "console")
    renderer = structlog.processors.JSONRenderer() if fmt == "json" else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level_name)),
        cache_logger_on_first_use=True,
    )

    # Suppress noisy library loggers
    logging.getLogger("protean").setLevel(logging.WARNING)
    _configured = True
