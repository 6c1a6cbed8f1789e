"""Structured logging setup for the service, built on structlog."""

import logging

import structlog


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Configure structlog once at startup.

    Args:
        level: Minimum level name, e.g. ``"INFO"``.
        fmt: ``"json"`` for one JSON object per line, ``"console"`` for a
            human readable renderer while developing.
    """
    renderer = (
        structlog.dev.ConsoleRenderer()
        if fmt == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
