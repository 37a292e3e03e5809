"""
Request context middleware for structured logging.

Binds request_id, method and path to the structlog context for the duration
of a request. Routes add `subject_id` themselves once the path is parsed.
"""

import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from subject_lookup.core.logging_config import bind_context, clear_context, get_logger

logger = get_logger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware to add request context to structured logs."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        Process request and add context to logs.

        Args:
            request: The incoming request
            call_next: The next middleware or route handler

        Returns:
            The response from the route handler
        """
        request_id = getattr(request.state, 'request_id', None) or \
            request.headers.get('X-Request-ID', str(uuid.uuid4()))

        bind_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
            logger.debug("request_completed", status_code=response.status_code)
            return response
        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise
        finally:
            clear_context()
