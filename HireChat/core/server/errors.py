"""
Error taxonomy of the realtime core.

Handlers raise these; the gateway's error boundary turns them into
``<event>-error`` emissions to the originating connection. Only an
``AuthenticationError`` raised while connecting closes the connection.
"""

from typing import Any, Dict, Optional


class ChatCoreError(Exception):
    """Base class for errors reported back to a client."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_payload(self) -> Dict[str, Any]:
        return {"success": False, "code": self.code, "message": self.message}


class ValidationError(ChatCoreError):
    """Missing or inconsistent fields in a client payload."""
    code = "INVALID_DATA"


class AuthenticationError(ChatCoreError):
    """Missing, invalid or mismatched credentials."""
    code = "UNAUTHENTICATED"


class NotFoundError(ChatCoreError):
    """The referenced chat or message does not exist."""
    code = "NOT_FOUND"


class PersistenceError(ChatCoreError):
    """The storage collaborator failed or timed out."""
    code = "PERSISTENCE_ERROR"


__all__ = [
    'ChatCoreError',
    'ValidationError',
    'AuthenticationError',
    'NotFoundError',
    'PersistenceError',
]
