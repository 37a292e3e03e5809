"""
Prometheus metrics for monitoring and observability.

This module defines the gateway's Prometheus metrics: lookup outcomes and
latency, admission occupancy, session churn, relatives cache efficiency and
API traffic.
"""

import logging
import re
from typing import Optional

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST
)

logger = logging.getLogger(__name__)

# Create a custom registry for our metrics
metrics_registry = CollectorRegistry()

# ============================================================================
# Lookup Metrics
# ============================================================================

lookup_counter = Counter(
    'subject_lookups_total',
    'Total number of subject lookups by outcome',
    ['outcome'],  # 'success', 'partial', 'failed', 'queue_timeout'
    registry=metrics_registry
)

lookup_duration_histogram = Histogram(
    'subject_lookup_duration_seconds',
    'Subject lookup duration in seconds',
    buckets=(0.5, 1, 2, 3, 5, 8, 13, 21, 34, 60),
    registry=metrics_registry
)

lookup_retry_counter = Counter(
    'subject_lookup_retries_total',
    'Lookup attempts restarted after a session loss',
    registry=metrics_registry
)

# ============================================================================
# Admission Metrics
# ============================================================================

active_lookups_gauge = Gauge(
    'subject_lookups_active',
    'Number of lookups holding an admission slot',
    registry=metrics_registry
)

queued_lookups_gauge = Gauge(
    'subject_lookups_queued',
    'Number of lookups waiting for an admission slot',
    registry=metrics_registry
)

idle_pages_gauge = Gauge(
    'browser_idle_pages',
    'Number of idle pages in the pool',
    registry=metrics_registry
)

# ============================================================================
# Session Metrics
# ============================================================================

login_counter = Counter(
    'portal_logins_total',
    'Portal login attempts by status',
    ['status'],  # 'success', 'failed'
    registry=metrics_registry
)

session_invalidation_counter = Counter(
    'portal_session_invalidations_total',
    'Session invalidations by reason',
    ['reason'],
    registry=metrics_registry
)

# ============================================================================
# Cache Metrics
# ============================================================================

relatives_cache_counter = Counter(
    'relatives_cache_lookups_total',
    'Relatives cache lookups by result',
    ['result'],  # 'hit', 'miss', 'cooldown'
    registry=metrics_registry
)

# ============================================================================
# API Metrics
# ============================================================================

api_request_counter = Counter(
    'subject_api_requests_total',
    'Total API requests by endpoint, method, and status',
    ['endpoint', 'method', 'status'],
    registry=metrics_registry
)

api_latency_histogram = Histogram(
    'subject_api_latency_seconds',
    'API request latency in seconds',
    ['endpoint'],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
    registry=metrics_registry
)

# ============================================================================
# Helper Functions
# ============================================================================

def record_lookup(outcome: str, duration_seconds: Optional[float] = None):
    """
    Record a finished lookup.

    Args:
        outcome: 'success', 'partial', 'failed' or 'queue_timeout'
        duration_seconds: Wall time of the lookup (optional)
    """
    try:
        lookup_counter.labels(outcome=outcome).inc()
        if duration_seconds is not None:
            lookup_duration_histogram.observe(duration_seconds)
    except Exception as e:
        logger.error(f"Failed to record lookup metric: {e}")


def record_lookup_retry():
    """Record a lookup attempt restarted after a session loss."""
    try:
        lookup_retry_counter.inc()
    except Exception as e:
        logger.error(f"Failed to record lookup retry metric: {e}")


def update_admission(active: int, queued: int):
    """
    Update admission gate occupancy.

    Args:
        active: Lookups currently holding a slot
        queued: Lookups waiting for a slot
    """
    try:
        active_lookups_gauge.set(active)
        queued_lookups_gauge.set(queued)
    except Exception as e:
        logger.error(f"Failed to update admission metrics: {e}")


def update_idle_pages(count: int):
    """Update the idle page count."""
    try:
        idle_pages_gauge.set(count)
    except Exception as e:
        logger.error(f"Failed to update idle pages metric: {e}")


def record_login(success: bool):
    """Record a login attempt outcome."""
    try:
        login_counter.labels(status='success' if success else 'failed').inc()
    except Exception as e:
        logger.error(f"Failed to record login metric: {e}")


def record_session_invalidation(reason: str):
    """
    Record a session invalidation.

    Args:
        reason: Short machine-friendly reason (e.g. 'heartbeat_401')
    """
    try:
        session_invalidation_counter.labels(reason=reason).inc()
    except Exception as e:
        logger.error(f"Failed to record session invalidation metric: {e}")


def record_relatives_cache(result: str):
    """
    Record a relatives cache lookup.

    Args:
        result: 'hit', 'miss' or 'cooldown'
    """
    try:
        relatives_cache_counter.labels(result=result).inc()
    except Exception as e:
        logger.error(f"Failed to record relatives cache metric: {e}")


def record_api_request(endpoint: str, method: str, status_code: int, latency_seconds: float):
    """
    Record an API request.

    Args:
        endpoint: The API endpoint path (e.g., '/title/12345678')
        method: HTTP method (GET, POST, etc.)
        status_code: HTTP status code
        latency_seconds: Request latency in seconds
    """
    try:
        normalized_endpoint = _normalize_endpoint(endpoint)

        api_request_counter.labels(
            endpoint=normalized_endpoint,
            method=method,
            status=str(status_code)
        ).inc()

        api_latency_histogram.labels(endpoint=normalized_endpoint).observe(latency_seconds)
    except Exception as e:
        logger.error(f"Failed to record API request metric: {e}")


def _normalize_endpoint(endpoint: str) -> str:
    """
    Normalize endpoint path by replacing subject ids with placeholders.

    Args:
        endpoint: Raw endpoint path

    Returns:
        Normalized endpoint path
    """
    endpoint = endpoint.split('?')[0]
    # Subject ids are digit runs, sometimes with a check character
    endpoint = re.sub(r'/[0-9][0-9kK.\-]*', '/{id}', endpoint)
    return endpoint


def get_metrics_text() -> bytes:
    """
    Get Prometheus metrics in text format.

    Returns:
        Metrics in Prometheus text format
    """
    return generate_latest(metrics_registry)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
