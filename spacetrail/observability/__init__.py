"""Observability helpers."""

from spacetrail.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_ingestion,
    record_bytes_read,
    record_tool_invocations,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_ingestion",
    "record_bytes_read",
    "record_tool_invocations",
]
