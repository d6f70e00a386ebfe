"""Error kinds raised inside the conversion workflow.

Only ValidationError and SessionClosedError ever escape a session call; remote
and decode failures are caught by the session and stored on the ``failed``
state as a :class:`~mytools_backend.models.SessionError`.
"""
from __future__ import annotations

from typing import Optional


class ConversionError(Exception):
    """Base class for every error the workflow classifies."""

    kind = "conversion"

    def __init__(self, message: str, *, reason: str = "error"):
        super().__init__(message)
        self.message = message
        self.reason = reason


class ValidationError(ConversionError):
    """No input, or no input that passes the preset's accept predicate."""

    kind = "validation"


class RemoteError(ConversionError):
    """Transport failure or non-2xx response from a remote endpoint."""

    kind = "remote"

    def __init__(self, message: str, *, status: Optional[int] = None, reason: str = "remote"):
        super().__init__(message, reason=reason)
        self.status = status


class InvalidResponse(RemoteError):
    """A 2xx response whose payload is empty or not what the preset expects."""

    kind = "invalid_response"

    def __init__(self, message: str, *, status: Optional[int] = None):
        super().__init__(message, status=status, reason="invalidResponse")


class DecodeError(ConversionError):
    """Malformed archive or unreadable payload."""

    kind = "decode"


class SessionClosedError(ConversionError):
    kind = "closed"

    def __init__(self, message: str = "Session is closed"):
        super().__init__(message, reason="closed")
