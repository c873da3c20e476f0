"""Structured logging configuration using structlog."""

from __future__ import annotations

import logging
import sys
from typing import TextIO

import structlog


def setup_logging(level: str = "info", stream: TextIO | None = None) -> None:
    """Configure structlog for one JSON object per line on *stream* (stderr by default).

    stdout stays free for command output such as ``plan --json``.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str) -> structlog.stdlib.BoundLogger:
    """Get a logger bound with a component name."""
    return structlog.get_logger(component=component)  # type: ignore[return-value]


def bind_run(run_id: str, mode: str) -> None:
    """Attach run identity to every log line emitted in this context."""
    structlog.contextvars.bind_contextvars(run_id=run_id, mode=mode)


def unbind_run() -> None:
    structlog.contextvars.unbind_contextvars("run_id", "mode")
