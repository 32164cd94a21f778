"""structlog configuration shared by the service and the scripts."""

from __future__ import annotations

import logging

import structlog


def configure_logging(level: str = "INFO", env: str = "development") -> None:
    """ISO timestamps everywhere; JSON lines in production, console otherwise."""
    numeric_level = logging.getLevelNamesMapping().get(level.upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer()
            if env == "production"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )
