"""Error types raised by agent sessions.

Interactive operations (authenticate, create_session, send_turn, ...) raise
these. Background teardown never raises, it only logs.
"""

from __future__ import annotations


class SessionError(Exception):
    """Base class for every error raised by this package."""


class ProtocolError(SessionError):
    """The agent answered with a malformed or rejected response."""


class DecodingError(ProtocolError):
    """A wire value could not be decoded.

    ``type_name`` carries the offending discriminator or enum value.
    """

    def __init__(self, message: str, type_name: str | None = None):
        super().__init__(message)
        self.type_name = type_name


class AuthenticationError(ProtocolError):
    """The agent rejected an authentication attempt."""


class TransportError(SessionError):
    """The agent process could not be spawned, or its pipes closed."""


class NoActiveSessionError(SessionError):
    """An operation needs a session id that has not been created yet."""

    def __init__(self, message: str = "No active session"):
        super().__init__(message)


class TurnInProgressError(SessionError):
    """A turn was submitted while another one is still running."""

    def __init__(self, message: str = "A turn is already in progress"):
        super().__init__(message)


class InvalidStateError(SessionError):
    """The operation is not valid in the session's current state."""
