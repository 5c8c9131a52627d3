"""Exceptions raised by the session orchestrator."""

from __future__ import annotations


class SessionError(Exception):
    """Base class for session orchestration errors."""


class InvalidSessionIdError(SessionError, ValueError):
    """Raised when a session id cannot be used as a registry key."""


class SessionNotConnectedError(SessionError):
    """Raised when an operation needs an authenticated connection."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session '{session_id}' is not connected")
        self.session_id = session_id


class TransportError(SessionError):
    """Raised when the transport rejects an operation."""


class TransportConstructionError(TransportError):
    """Raised when a transport handle could not be built for a session."""
