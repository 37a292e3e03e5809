"""
Lookup services: browser pool, session, keep-alive, relatives and orchestration.
"""

from subject_lookup.services.browser_pool import AdmissionGate, BrowserPool
from subject_lookup.services.portal_client import PortalApiClient, PortalResponse
from subject_lookup.services.session_manager import SessionManager
from subject_lookup.services.relatives_resolver import RelativesResolver
from subject_lookup.services.keepalive import KeepAliveScheduler
from subject_lookup.services.query_orchestrator import QueryOrchestrator
from subject_lookup.services.data_transform import transform_to_structured
from subject_lookup.services.registry import LookupServices

__all__ = [
    'AdmissionGate',
    'BrowserPool',
    'PortalApiClient',
    'PortalResponse',
    'SessionManager',
    'RelativesResolver',
    'KeepAliveScheduler',
    'QueryOrchestrator',
    'transform_to_structured',
    'LookupServices',
]
