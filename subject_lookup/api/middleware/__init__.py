"""
API middleware components.
"""

from subject_lookup.api.middleware.logging import LoggingMiddleware
from subject_lookup.api.middleware.metrics import MetricsMiddleware
from subject_lookup.api.middleware.request_context import RequestContextMiddleware

__all__ = [
    'LoggingMiddleware',
    'MetricsMiddleware',
    'RequestContextMiddleware'
]
