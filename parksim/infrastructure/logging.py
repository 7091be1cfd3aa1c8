"""
Structured logging configuration.

Provides:
- JSON logging for production (easy to aggregate)
- Text logging for development (human readable)
- Clean one-line logging for watching a live simulation
- Context injection for tracing a session through its lifecycle
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any

import structlog
from structlog.types import EventDict, Processor
from structlog import DropEvent


# Events too chatty for the clean console
NOISE_EVENTS = [
    "Event handler subscribed",
    "Hook registered",
    "Timer armed",
    "Timer cancelled",
    "Queue entry added",
    "Queue entry removed",
]


def filter_noise(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Filter out noise events."""
    if method_name == "debug":
        raise DropEvent

    event = event_dict.get("event", "")
    for noise in NOISE_EVENTS:
        if noise in event:
            raise DropEvent
    return event_dict


def add_timestamp(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add ISO timestamp to log entry."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def add_log_level(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add log level to event dict."""
    event_dict["level"] = method_name.upper()
    return event_dict


def censor_secrets(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Remove sensitive data from logs."""
    sensitive_keys = {
        "password", "token", "secret", "api_key", "dsn",
    }

    def _censor(obj: Any) -> Any:
        if isinstance(obj, dict):
            return {
                k: "[REDACTED]" if any(s in str(k).lower() for s in sensitive_keys) else _censor(v)
                for k, v in obj.items()
            }
        elif isinstance(obj, list):
            return [_censor(item) for item in obj]
        return obj

    return _censor(event_dict)


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """
    Configure structured logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format ("json", "text", or "clean")
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_timestamp,
        add_log_level,
        censor_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors = shared_processors + [
            structlog.processors.JSONRenderer()
        ]
    elif log_format == "clean":
        processors = shared_processors + [
            filter_noise,
            CleanConsoleRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True)
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging.getLevelName(log_level),
    )

    if log_format == "clean":
        for verbose_logger in [
            "parksim.core.scheduler",
            "parksim.core.event_bus",
        ]:
            logging.getLogger(verbose_logger).setLevel(logging.WARNING)


class CleanConsoleRenderer:
    """
    Compact console renderer for watching a simulation.

    Turns lifecycle log events into short tagged one-liners.
    """

    TAGS = {
        "requested": "[REQ]",
        "completed": "[OK ]",
        "cancelled": "[CXL]",
        "refunded": "[REF]",
        "impound": "[IMP]",
        "ticket": "[TKT]",
        "error": "[ERR]",
    }

    def __call__(
        self,
        logger: logging.Logger,
        method_name: str,
        event_dict: EventDict,
    ) -> str:
        level = event_dict.get("level", "INFO").upper()
        event = str(event_dict.get("event", ""))
        lowered = event.lower()

        tag = "[...]"
        for key, value in self.TAGS.items():
            if key in lowered:
                tag = value
                break

        if level == "ERROR":
            tag = self.TAGS["error"]
            message = f"{event}: {event_dict.get('error', '')}".rstrip(": ")
        else:
            subject = event_dict.get("plate") or event_dict.get("session_id") or ""
            message = f"{event} {subject}".strip()

        time_str = datetime.now().strftime("%H:%M:%S")
        return f"\033[90m[{time_str}]\033[0m {tag} {message}"


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get a logger instance with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Bound logger instance
    """
    return structlog.get_logger(name)


class LogContext:
    """Context manager for adding temporary context to logs."""

    def __init__(self, **context: Any):
        self.context = context
        self._token = None

    def __enter__(self) -> "LogContext":
        self._token = structlog.contextvars.bind_contextvars(**self.context)
        return self

    def __exit__(self, *args: Any) -> None:
        if self._token:
            structlog.contextvars.unbind_contextvars(*self.context.keys())


def bind_context(**context: Any) -> None:
    """Bind context variables for the current context."""
    structlog.contextvars.bind_contextvars(**context)


def unbind_context(*keys: str) -> None:
    """Unbind context variables."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all context variables."""
    structlog.contextvars.clear_contextvars()
