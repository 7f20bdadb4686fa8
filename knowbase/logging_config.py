"""Structured logging setup shared by the HTTP app and the CLI."""
import logging

import structlog

from knowbase import config


def configure_logging(log_level: str = None) -> None:
    """Configure structlog to emit JSON lines at the given level.

    Args:
        log_level: Level name such as "INFO" (default from config)
    """
    level = getattr(logging, (log_level or config.LOG_LEVEL).upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
