"""
System status and session control endpoints.
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel

from subject_lookup.api.dependencies import get_keepalive, get_services, get_session
from subject_lookup.services.keepalive import KeepAliveScheduler
from subject_lookup.services.registry import LookupServices
from subject_lookup.services.session_manager import SessionManager

router = APIRouter()
logger = logging.getLogger(__name__)

SERVICE_NAME = "subject-lookup-gateway"


class PingResponse(BaseModel):
    """Liveness response model."""
    status: str
    timestamp: str
    uptime: float
    service: str


class SessionHealthResponse(BaseModel):
    """Session health response model."""
    success: bool
    session_healthy: bool
    token_valid: bool
    browser_active: bool
    message: str


class ActionResponse(BaseModel):
    """Result of a manual maintenance action."""
    success: bool
    message: str
    timestamp: str
    details: Dict[str, Any] = {}


def _uptime(request: Request) -> float:
    started_at = getattr(request.app.state, "started_at", None)
    return round(time.time() - started_at, 1) if started_at else 0.0


def _activity(services: LookupServices) -> Dict[str, Any]:
    keepalive = services.keepalive.stats
    return {
        "is_idle": keepalive["is_idle"],
        "seconds_since_last_request": services.orchestrator.statistics["seconds_since_last_request"],
        "seconds_since_last_activity": keepalive["seconds_since_last_activity"],
        "last_activity_at": keepalive["last_activity_at"],
    }


@router.get("/ping", response_model=PingResponse, summary="Liveness check")
async def ping(request: Request):
    return PingResponse(
        status="ok",
        timestamp=datetime.utcnow().isoformat(),
        uptime=_uptime(request),
        service=SERVICE_NAME
    )


@router.get("/sessions", summary="Pool, session and lookup statistics")
async def get_sessions(request: Request, services: LookupServices = Depends(get_services)):
    """Counters only; this endpoint never calls the portal."""
    uptime = _uptime(request)
    statistics = services.orchestrator.statistics
    hours = uptime / 3600
    requests_per_hour = round(statistics["total_requests"] / hours, 2) if hours > 0 else 0.0

    return {
        **services.pool.stats,
        "session": services.session.stats,
        "keepalive_active": services.keepalive.is_active,
        "activity": _activity(services),
        "relatives_cache": {
            "size": services.relatives.cache_stats()["cache"]["size"],
            "ttl_seconds": services.relatives.ttl,
        },
        "statistics": {
            **statistics,
            "requests_per_hour": requests_per_hour,
            "uptime_hours": round(hours, 2),
        },
    }


@router.get("/system-status", summary="Detailed system status")
async def get_system_status(services: LookupServices = Depends(get_services)):
    """Includes a live session health check when a token exists."""
    session = services.session
    healthy = await session.check_health() if session.token else False

    return {
        "timestamp": datetime.utcnow().isoformat(),
        "browser": {
            "active": services.pool.is_ready,
            **services.pool.stats,
        },
        "token": {
            "exists": bool(session.token),
            "minutes_left": max(session.minutes_left, 0),
            "expired": session.seconds_left <= 0,
            "healthy": healthy,
        },
        "activity": _activity(services),
        "keepalive": {
            "active": services.keepalive.is_active,
            "is_logging_in": session.is_logging_in,
            "runs": services.keepalive.stats["runs"],
        },
    }


@router.get("/health-check", response_model=SessionHealthResponse, summary="Session health")
async def get_health_check(
    services: LookupServices = Depends(get_services),
    session: SessionManager = Depends(get_session)
):
    healthy = await session.is_session_healthy()
    return SessionHealthResponse(
        success=True,
        session_healthy=healthy,
        token_valid=session.is_valid,
        browser_active=services.pool.is_ready,
        message="Session healthy" if healthy else "Session needs renewal"
    )


@router.post(
    "/refresh-token",
    response_model=ActionResponse,
    status_code=status.HTTP_200_OK,
    summary="Force a new login and reload the idle pages"
)
async def refresh_token(services: LookupServices = Depends(get_services)):
    session = services.session
    await session.force_refresh()
    await services.pool.refresh_pool()
    return ActionResponse(
        success=True,
        message="Token renewed",
        timestamp=datetime.utcnow().isoformat(),
        details={
            "token": "present" if session.token else "absent",
            "version": session.version,
            "idle_pages": services.pool.idle_count,
        }
    )


@router.post(
    "/force-idle-activity",
    response_model=ActionResponse,
    status_code=status.HTTP_200_OK,
    summary="Run an idle activity burst now"
)
async def force_idle_activity(keepalive: KeepAliveScheduler = Depends(get_keepalive)):
    """
    Status codes:
    - 200: Activity ran
    - 503: Browser or token not available
    """
    outcome = await keepalive.force_idle_activity()
    return ActionResponse(
        success=True,
        message="Idle activity executed",
        timestamp=datetime.utcnow().isoformat(),
        details=outcome
    )
