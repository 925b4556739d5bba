"""structlog configuration shared by the API server and the CLI entry point."""

from __future__ import annotations

import logging
import sys

import structlog

_SENSITIVE_KEYS = frozenset({"api_key", "openai_api_key", "authorization", "token"})


def _redact_secrets(
    logger: object, method_name: str, event_dict: dict[str, object]
) -> dict[str, object]:
    """Mask provider credentials that end up in log kwargs."""
    for key in event_dict:
        if key.lower() in _SENSITIVE_KEYS:
            event_dict[key] = "***REDACTED***"
    return event_dict


def setup_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Configure stdlib logging and structlog processors.

    Args:
        level: Log level name, e.g. ``"DEBUG"``.
        json_output: Render JSON lines instead of the coloured console
            format (used outside local development).
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    renderer: structlog.types.Processor
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        cache_logger_on_first_use=True,
    )
