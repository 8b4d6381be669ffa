"""Logging utilities for Fluorite Flake."""

from fluorite.observability.logging import (
    StructuredFormatter,
    configure_structured_logging,
    log_event,
    timed_operation,
)

__all__ = [
    "StructuredFormatter",
    "configure_structured_logging",
    "log_event",
    "timed_operation",
]
