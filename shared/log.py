"""Structured logging setup for the bridge and its components.

Usage:
    from shared.log import get_logger
    logger = get_logger("journal-watcher")
    logger.info("watcher_started", mode="json")

Output is JSON when stdout is not a TTY (container / systemd unit) and the
structlog console renderer when run interactively.
"""

import logging
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog


def _normalize_log_event(_logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """Normalize logs to: timestamp, level, service, msg, context."""
    if "msg" not in event_dict and "event" in event_dict:
        event_dict["msg"] = event_dict.pop("event")

    reserved = {"timestamp", "level", "service", "msg", "context"}
    context = event_dict.get("context")
    if not isinstance(context, dict):
        context = {} if context is None else {"value": context}

    for key in list(event_dict.keys()):
        if key not in reserved:
            context[key] = event_dict.pop(key)

    event_dict["context"] = context
    return event_dict


def setup_logging(level: str = "INFO", log_format: str = "auto") -> None:
    """Configure structlog for JSON logs on the charger and console logs locally."""
    fmt = log_format.lower()
    is_json = fmt == "json" or (fmt == "auto" and not sys.stdout.isatty())

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
    ]
    if is_json:
        processors += [_normalize_log_event, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


_initialized = False


def get_logger(service_name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger bound with the component name."""
    global _initialized
    if not _initialized:
        from shared.config import Settings

        settings = Settings()
        setup_logging(settings.log_level, settings.log_format)
        _initialized = True

    return structlog.get_logger(service=service_name)
