"""
Custom exception classes for the API.
"""

from typing import Optional, Dict, Any
from fastapi import HTTPException, status


class APIException(HTTPException):
    """Base API exception class."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(status_code=status_code, detail=message, headers=headers)


class ServiceUnavailableException(APIException):
    """The gateway cannot take the request right now; the client should retry."""

    def __init__(self, message: str, retry_after: int, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code="SERVICE_UNAVAILABLE",
            message=message,
            details={**(details or {}), "retry_after": retry_after},
            headers={"Retry-After": str(retry_after)}
        )


class LookupException(APIException):
    """Lookup failed; the message never carries upstream detail."""

    def __init__(self, subject_id: Optional[str] = None):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code="LOOKUP_ERROR",
            message="Error processing lookup, please try again",
            details={"subject_id": subject_id} if subject_id else {}
        )


class NoSessionException(APIException):
    """A diagnostic endpoint needs an existing portal session."""

    def __init__(self, message: str = "No valid session token"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code="NO_SESSION",
            message=message
        )
