"""Exception hierarchy shared by the matching and scheduling modules."""
from __future__ import annotations


class MatchmakerError(Exception):
    """Base class for errors raised by Matchmaker."""


class NotFoundError(MatchmakerError):
    """A referenced user, request, proposal or meeting does not exist."""


class PermissionDeniedError(MatchmakerError):
    """The acting user may not perform the requested transition."""


class DuplicateRequestError(MatchmakerError):
    """An active meeting request already exists between the two users."""


class OAuthError(MatchmakerError):
    """Token exchange or refresh against the OAuth provider failed."""


class OAuthNotConfiguredError(OAuthError):
    """Client id, secret or redirect URI is missing from the settings."""


class CalendarError(MatchmakerError):
    """A write against the external calendar failed.

    Only raised by write paths; read paths fail open instead.
    """
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
