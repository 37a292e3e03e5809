"""
Exception handlers mapping gateway errors to the JSON error envelope.

Every error body has the shape::

    {"error": {"code", "message", "details", "timestamp", "request_id"}}
"""

import time
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from subject_lookup.api.errors.exceptions import APIException, LookupException, ServiceUnavailableException
from subject_lookup.core.logging_config import get_logger
from subject_lookup.core.sentry_config import capture_exception
from subject_lookup.exceptions import QueueTimeout, SubjectLookupError, UpstreamUnavailable

logger = get_logger(__name__)

QUEUE_RETRY_AFTER = 5
UPSTREAM_RETRY_AFTER = 10


def error_body(request: Request, code: str, message: str, details: Optional[Dict[str, Any]] = None) -> dict:
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
            "timestamp": time.time(),
            "request_id": getattr(request.state, "request_id", None),
        }
    }


def _api_response(request: Request, exc: APIException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(request, exc.code, exc.message, exc.details),
        headers=exc.headers
    )


async def api_exception_handler(request: Request, exc: APIException) -> JSONResponse:
    logger.warning(
        "api_error",
        code=exc.code,
        status_code=exc.status_code,
        error_message=exc.message,
        details=exc.details,
    )
    return _api_response(request, exc)


async def lookup_exception_handler(request: Request, exc: SubjectLookupError) -> JSONResponse:
    """
    Map lookup engine errors to HTTP.

    Queue timeouts and a missing browser are transient (503 with
    Retry-After). Anything else is a generic 500 without upstream detail.
    """
    subject_id = request.path_params.get("subject_id")

    if isinstance(exc, QueueTimeout):
        api_exc = ServiceUnavailableException(exc.message, QUEUE_RETRY_AFTER, exc.details)
    elif isinstance(exc, UpstreamUnavailable):
        api_exc = ServiceUnavailableException("Lookup service temporarily unavailable", UPSTREAM_RETRY_AFTER)
    else:
        logger.error(
            "lookup_error",
            error_type=type(exc).__name__,
            error_message=exc.message,
            subject_id=subject_id,
            details=exc.details,
        )
        capture_exception(exc, tags={"subject_id": subject_id or "none"})
        api_exc = LookupException(subject_id)

    return await api_exception_handler(request, api_exc)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    logger.warning("http_error", status_code=exc.status_code, detail=exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(request, f"HTTP_{exc.status_code}", exc.detail),
        headers=exc.headers
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Bad subject ids and query parameters answer 400 with one entry per field."""
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    logger.warning("request_validation_failed", errors=errors)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body(request, "VALIDATION_ERROR", "Request validation failed", {"errors": errors})
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception", error_type=type(exc).__name__)
    capture_exception(exc, tags={"path": request.url.path})
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body(request, "INTERNAL_SERVER_ERROR", "An unexpected error occurred")
    )


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(APIException, api_exception_handler)
    app.add_exception_handler(SubjectLookupError, lookup_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
