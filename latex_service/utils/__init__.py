"""Structured logging for the service (structlog).

Console output in development, one JSON object per line in production. Events
go to stderr so the CLI's rich output on stdout stays clean. Values under
credential-like keys are masked before rendering.
"""

import sys

import structlog
from latex_service.config import settings

SENSITIVE_KEYS = frozenset({"password", "secret", "api_key", "authorization", "auth", "token"})

_LEVELS = {"debug": 10, "info": 20, "warning": 30, "warn": 30, "error": 40, "critical": 50}


def mask_sensitive(logger, method_name: str, event_dict: dict) -> dict:
    for key in event_dict.keys() & SENSITIVE_KEYS:
        event_dict[key] = "***"
    return event_dict


def setup_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Configure structlog. ``level``/``fmt`` override the settings values."""
    if (fmt or settings.log_format) == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            mask_sensitive,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            _LEVELS.get((level or settings.log_level).lower(), 20)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
