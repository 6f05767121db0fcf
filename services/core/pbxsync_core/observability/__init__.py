"""Observability package for structured logging."""

from pbxsync_core.observability.logging import (
    StructuredLogger,
    JsonFormatter,
    SyncContext,
    get_logger,
    configure_logging,
)

__all__ = [
    "StructuredLogger",
    "JsonFormatter",
    "SyncContext",
    "get_logger",
    "configure_logging",
]
