"""Structured logging helpers for the IPC daemon.

Provides:
- StructuredFormatter: one JSON object per log record
- log_event: structured event logging with numeric metrics split out
- timed_operation: context manager that logs an operation's latency
- configure_structured_logging: root logger setup for daemon mode

Usage:
    from fluorite.observability.logging import log_event

    log_event(logger, "ipc.client.connect", peer="127.0.0.1:52344", active_connections=2)
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any


class StructuredFormatter(logging.Formatter):
    """Render log records as single-line JSON.

    Standard fields are timestamp, level, logger and message. Records produced
    by log_event() or timed_operation() also carry event, metrics and metadata.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for attr, key in (("event_type", "event"), ("metrics", "metrics"), ("metadata", "metadata")):
            value = getattr(record, attr, None)
            if value:
                entry[key] = value

        if record.exc_info and record.exc_info[1]:
            entry["error"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


def _split_fields(fields: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    # bool is an int subclass but reads better as metadata
    metrics = {
        k: v for k, v in fields.items() if isinstance(v, (int, float)) and not isinstance(v, bool)
    }
    metadata = {k: v for k, v in fields.items() if k not in metrics}
    return metrics, metadata


def log_event(
    log: logging.Logger,
    event_type: str,
    level: int = logging.INFO,
    message: str | None = None,
    **fields: Any,
) -> None:
    """Log a structured event.

    Args:
        log: Logger instance.
        event_type: Dotted event name (e.g., "ipc.server.start").
        level: Log level.
        message: Optional human-readable message. Defaults to event_type.
        **fields: Numeric values go to metrics, everything else to metadata.
    """
    metrics, metadata = _split_fields(fields)
    log.log(
        level,
        message or event_type,
        extra={
            "event_type": event_type,
            "metrics": metrics or None,
            "metadata": metadata or None,
        },
    )


@contextmanager
def timed_operation(
    log: logging.Logger,
    operation: str,
    level: int = logging.DEBUG,
    **extra: Any,
) -> Iterator[dict[str, Any]]:
    """Log completion (or failure) of an operation with its latency.

    Yields a dict the caller may fill with additional fields while the
    operation runs; they are merged into the completion event.
    """
    ctx: dict[str, Any] = {}
    start = time.perf_counter()
    try:
        yield ctx
    except Exception:
        elapsed_ms = (time.perf_counter() - start) * 1000
        log_event(
            log,
            f"{operation}.failed",
            level=logging.WARNING,
            latency_ms=round(elapsed_ms, 1),
            **extra,
        )
        raise
    elapsed_ms = (time.perf_counter() - start) * 1000
    log_event(
        log,
        f"{operation}.complete",
        level=level,
        latency_ms=round(elapsed_ms, 1),
        **{**extra, **ctx},
    )


def configure_structured_logging(level: int = logging.INFO) -> None:
    """Send root logger output to stderr as JSON lines.

    The daemon keeps stdout for its ready line, so logs go to stderr.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]
