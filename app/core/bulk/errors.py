"""Bulk job exceptions."""
from __future__ import annotations


class BulkError(Exception):
    """Base exception for bulk operations; carries the HTTP status the API answers with."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(BulkError):
    """Submission rejected before a session was created."""

    status_code = 400


class SessionNotFoundError(BulkError):
    status_code = 404

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"No active session '{session_id}'")


class InvalidTransitionError(BulkError):
    """Illegal session state change, or a resolution posted to a session not awaiting one."""

    status_code = 409


class ChannelClosedError(BulkError):
    """An event was emitted after the channel's terminal event."""

    status_code = 410


class ResolutionTimeoutError(BulkError):
    """Nobody answered a population prompt within the configured wait."""

    status_code = 408
