"""structlog configuration shared by the gateway and the CLI."""

from __future__ import annotations

import logging
import re

import structlog

# Keys whose values must never reach a log sink.
_SECRET_KEY_PATTERN = re.compile(
    r"(token|secret|password|credential|authorization|cookie|api_key|access_key)",
    re.IGNORECASE,
)

REDACTED = "[REDACTED]"


def redact_secrets(logger, method_name: str, event_dict: dict) -> dict:
    """structlog processor: blank out secret-looking values before rendering."""
    for key in list(event_dict):
        if key == "event":
            continue
        if _SECRET_KEY_PATTERN.search(key):
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(level: str = "INFO", json: bool = True) -> None:
    """Configure structlog for the process."""
    renderer = (
        structlog.processors.JSONRenderer()
        if json
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_secrets,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        cache_logger_on_first_use=False,
    )
