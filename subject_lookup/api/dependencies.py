"""
FastAPI dependencies resolving the lookup services from app state.
"""

from typing import Annotated

from fastapi import Depends, Path, Request

from subject_lookup.api.errors.exceptions import NoSessionException, ServiceUnavailableException
from subject_lookup.services.keepalive import KeepAliveScheduler
from subject_lookup.services.query_orchestrator import QueryOrchestrator
from subject_lookup.services.registry import LookupServices
from subject_lookup.services.relatives_resolver import RelativesResolver
from subject_lookup.services.session_manager import SessionManager

# Ids end up in portal query strings
SUBJECT_ID_PATTERN = r"^[0-9A-Za-z]{1,32}$"

SubjectId = Annotated[str, Path(pattern=SUBJECT_ID_PATTERN, description="National id of the subject")]


def get_services(request: Request) -> LookupServices:
    """Dependency to get the lookup services from app state."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise ServiceUnavailableException("Lookup services are starting", retry_after=5)
    return services


def get_orchestrator(services: LookupServices = Depends(get_services)) -> QueryOrchestrator:
    return services.orchestrator


def get_session(services: LookupServices = Depends(get_services)) -> SessionManager:
    return services.session


def get_relatives(services: LookupServices = Depends(get_services)) -> RelativesResolver:
    return services.relatives


def get_keepalive(services: LookupServices = Depends(get_services)) -> KeepAliveScheduler:
    return services.keepalive


def require_session(session: SessionManager = Depends(get_session)) -> SessionManager:
    """Dependency for diagnostic routes that must not trigger a login."""
    if not session.token:
        raise NoSessionException()
    return session
