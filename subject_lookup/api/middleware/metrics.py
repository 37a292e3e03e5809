"""
Per-route request counters and latency for the Prometheus registry.
"""

import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from subject_lookup.api.monitoring.metrics import record_api_request

# Liveness and scrape traffic
UNTRACKED_PATHS = ('/health', '/metrics', '/ping')


class MetricsMiddleware(BaseHTTPMiddleware):
    """Records every tracked request, including ones that raised (as 500)."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path.startswith(UNTRACKED_PATHS):
            return await call_next(request)

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            record_api_request(
                endpoint=path,
                method=request.method,
                status_code=status_code,
                latency_seconds=time.perf_counter() - started
            )
