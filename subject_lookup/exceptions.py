"""
Domain exceptions for the lookup engine.

Session-related failures are recovered internally (re-login and transparent
retry). Everything else reaches the HTTP layer as a generic failure.
"""

import re
from typing import Any, Dict, Optional


class SubjectLookupError(Exception):
    """Base class for lookup engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class AuthExpired(SubjectLookupError):
    """The portal session is invalid; recoverable by logging in again."""


class LoginFailed(AuthExpired):
    """Login did not yield a bearer token."""


class QueueTimeout(SubjectLookupError):
    """Admission wait exceeded; the caller may retry later."""

    def __init__(self, waited_seconds: float):
        super().__init__(
            "Too many lookups in queue",
            details={"waited_seconds": round(waited_seconds, 2)}
        )
        self.waited_seconds = waited_seconds


class NavigationTimeout(SubjectLookupError):
    """The portal did not answer a navigation in time."""


class PartialData(SubjectLookupError):
    """Critical categories were still missing when the wait ran out."""


class UpstreamUnavailable(SubjectLookupError):
    """The browser process is gone; in-flight work must be resubmitted."""


class LookupFailed(SubjectLookupError):
    """Lookup failed after all retries. Carries no session detail."""


class PortalRequestError(SubjectLookupError):
    """Transport-level failure talking to the portal API."""


# Whole status codes only: subject ids inside URLs often contain the digits.
SESSION_ERROR_PATTERN = re.compile(r"(?<!\d)40[13](?!\d)|unauthorized|expired")


def is_session_error(error: BaseException) -> bool:
    """Classify an error as session-related (re-login may fix it)."""
    if isinstance(error, AuthExpired):
        return True
    return SESSION_ERROR_PATTERN.search(str(error).lower()) is not None
