"""Errors raised by the ingestion pipeline."""
from __future__ import annotations


class ReconcileError(Exception):
    """A batch could not be merged into the aggregation store."""


class SessionConflictError(ReconcileError):
    """An insert collided with an existing external session id."""

    def __init__(self, external_session_id: str):
        super().__init__(f"Session already exists for external id {external_session_id!r}")
        self.external_session_id = external_session_id
