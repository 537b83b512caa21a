"""Exception hierarchy of the sync engine."""
from __future__ import annotations

from typing import Optional


class ChronifyError(Exception):
    """Base exception for engine errors."""


class ValidationError(ChronifyError):
    """Malformed mutation, rejected before it touches the store or the queue."""


class NotFoundError(ChronifyError):
    """Unknown local id."""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type} {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class NetworkError(ChronifyError):
    """Transport failure or timeout while talking to the remote system."""


class RemoteError(ChronifyError):
    """Non-2xx response from the remote system."""

    def __init__(self, status_code: int, message: str, response_data: Optional[dict] = None):
        super().__init__(f"Remote error {status_code}: {message}")
        self.status_code = status_code
        self.response_data = response_data or {}


class SessionClosedError(ChronifyError):
    """The session was torn down (logout) and accepts no more work."""


TRANSIENT_ERRORS = (NetworkError, RemoteError)


__all__ = [
    "ChronifyError",
    "ValidationError",
    "NotFoundError",
    "NetworkError",
    "RemoteError",
    "SessionClosedError",
    "TRANSIENT_ERRORS",
]
