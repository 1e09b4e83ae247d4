"""
Structured logging configuration using structlog.
"""
import logging

import structlog
from square_reconciler.config import settings


def configure_logging():
    """
    Configure structured logging for the reconciler.
    Sets up JSON formatting for production, console formatting for development.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]

    if settings.app_environment == "production":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def bind_sync_context(sync_id: str, sync_type: str, environment: str) -> None:
    """Attach sync identifiers to every log line emitted during a sync run."""
    structlog.contextvars.bind_contextvars(
        sync_id=sync_id, sync_type=sync_type, environment=environment
    )


def clear_sync_context() -> None:
    structlog.contextvars.unbind_contextvars("sync_id", "sync_type", "environment")
