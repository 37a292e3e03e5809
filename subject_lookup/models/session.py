"""
Portal session state.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class SessionStatus(str, Enum):
    """Login state machine."""
    UNAUTHENTICATED = "unauthenticated"
    LOGGING_IN = "logging_in"
    AUTHENTICATED = "authenticated"


@dataclass
class SessionState:
    """
    The single shared portal credential.

    `expires_at` is on the session manager's clock (monotonic seconds).
    An empty token always means unauthenticated.
    """
    token: str = ""
    expires_at: float = 0.0
    version: int = 0
    logging_in: bool = False
    captured_at: Optional[float] = None

    @property
    def status(self) -> SessionStatus:
        if self.logging_in:
            return SessionStatus.LOGGING_IN
        if self.token:
            return SessionStatus.AUTHENTICATED
        return SessionStatus.UNAUTHENTICATED

    def is_valid(self, now: float) -> bool:
        """Token present and the local expiry clock has not run out."""
        return bool(self.token) and now < self.expires_at

    def seconds_left(self, now: float) -> float:
        if not self.token:
            return 0.0
        return self.expires_at - now

    def clear(self) -> None:
        self.token = ""
        self.expires_at = 0.0
        self.captured_at = None
