"""
Monitoring and observability module.
"""

from subject_lookup.api.monitoring.metrics import (
    metrics_registry,
    lookup_counter,
    lookup_duration_histogram,
    active_lookups_gauge,
    queued_lookups_gauge,
    api_request_counter,
    api_latency_histogram,
    record_lookup,
    record_login,
    record_session_invalidation,
    record_relatives_cache,
    record_api_request,
    update_admission,
    get_metrics_text,
    get_metrics_content_type
)

__all__ = [
    'metrics_registry',
    'lookup_counter',
    'lookup_duration_histogram',
    'active_lookups_gauge',
    'queued_lookups_gauge',
    'api_request_counter',
    'api_latency_histogram',
    'record_lookup',
    'record_login',
    'record_session_invalidation',
    'record_relatives_cache',
    'record_api_request',
    'update_admission',
    'get_metrics_text',
    'get_metrics_content_type'
]
