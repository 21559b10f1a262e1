"""Exception types raised by tracker services."""

from __future__ import annotations


class TrackerError(Exception):
    """Base class for tracker errors."""


class ValidationError(TrackerError, ValueError):
    """Input rejected before any write was attempted."""


class AuthenticationError(TrackerError):
    """A password check failed.

    ``field`` names the form field the message belongs to.
    """

    def __init__(self, message: str, field: str = "password") -> None:
        super().__init__(message)
        self.field = field


class PermissionDenied(TrackerError):
    """The current account may not perform the action."""


class MalformedRowError(TrackerError):
    """A stored row failed decoding at the persistence boundary."""
