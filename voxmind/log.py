"""Structlog setup shared by every VoxMind entry point."""

from __future__ import annotations

import logging

import structlog

_logging_configured = False

# Fields that may carry user conversation text.
_CONTENT_KEYS = ("content", "query", "text", "user_message")
_MAX_DISPLAY_LEN = 80


def _truncate_content_fields(logger, method_name, event_dict):
    """
    Structlog processor that shortens conversation text in log records.

    Keeps user messages and retrieval queries from landing in log files in
    full while leaving enough of them visible for debugging.
    """
    for key in _CONTENT_KEYS:
        val = event_dict.get(key)
        if isinstance(val, str) and len(val) > _MAX_DISPLAY_LEN:
            event_dict[key] = val[:_MAX_DISPLAY_LEN] + "... [truncated]"
    return event_dict


def configure_logging(level: int | str = logging.WARNING, *, colors: bool = True) -> None:
    """Configure structlog and standard-library logging.

    Safe to call more than once; subsequent calls are no-ops.
    """
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.WARNING

    logging.basicConfig(format="%(message)s", level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _truncate_content_fields,
            structlog.dev.ConsoleRenderer(colors=colors),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
