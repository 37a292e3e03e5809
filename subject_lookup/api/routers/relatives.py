"""
Relatives diagnostics and cache administration endpoints.

The diagnostic routes need an existing session; they never log in.
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from subject_lookup.api.dependencies import SubjectId, get_relatives, require_session
from subject_lookup.core.logging_config import bind_context
from subject_lookup.models.relatives import RelativesResult
from subject_lookup.services.relatives_resolver import RelativesResolver
from subject_lookup.services.session_manager import SessionManager

router = APIRouter()
logger = logging.getLogger(__name__)


def _summary(members: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "name": member.get("fullname") or member.get("name"),
            "identification": member.get("dni") or member.get("identification"),
            "relationship": member.get("relationship") or member.get("parentesco"),
            "age": member.get("age"),
        }
        for member in members
    ]


def _recommendations(total: int, token_healthy: bool) -> List[str]:
    recommendations = []
    if total == 0:
        recommendations.append("No relatives found; check that the id exists in the portal")
        recommendations.append("Check connectivity with the portal API")
    elif total < 2:
        recommendations.append("Few relatives found; data may be incomplete, consider querying again later")
    else:
        recommendations.append("Relatives resolved")
    if not token_healthy:
        recommendations.append("Session unhealthy; renew it with POST /refresh-token")
    return recommendations


@router.get("/test-family/{subject_id}", summary="Resolve relatives with a per-bucket summary")
async def test_family(
    subject_id: SubjectId,
    session: SessionManager = Depends(require_session),
    relatives: RelativesResolver = Depends(get_relatives)
):
    bind_context(subject_id=subject_id)
    cached = relatives.is_cached(subject_id)
    result: RelativesResult = await relatives.resolve(subject_id)

    return {
        "success": True,
        "subject_id": subject_id,
        "total_members": result.total_members,
        "summary": {bucket: _summary(members) for bucket, members in result.to_dict().items()},
        "raw": result.to_dict(),
        "counts": result.counts(),
        "cache_used": cached,
    }


@router.get("/debug-family-endpoints/{subject_id}", summary="Probe each relatives endpoint once")
async def debug_family_endpoints(
    subject_id: SubjectId,
    session: SessionManager = Depends(require_session),
    relatives: RelativesResolver = Depends(get_relatives)
):
    report = await relatives.probe_endpoints(subject_id)
    report["timestamp"] = datetime.utcnow().isoformat()
    return report


@router.get("/diagnose-family/{subject_id}", summary="Uncached resolution with recommendations")
async def diagnose_family(
    subject_id: SubjectId,
    session: SessionManager = Depends(require_session),
    relatives: RelativesResolver = Depends(get_relatives)
):
    bind_context(subject_id=subject_id)
    relatives.force_retry(subject_id)

    started = time.monotonic()
    result = await relatives.resolve(subject_id)
    duration_ms = int((time.monotonic() - started) * 1000)

    token_healthy = await session.check_health()
    total = result.total_members

    return {
        "subject_id": subject_id,
        "timestamp": datetime.utcnow().isoformat(),
        "duration_ms": duration_ms,
        "success": total > 0,
        "total_members": total,
        "breakdown": result.counts(),
        "token_healthy": token_healthy,
        "cache_stats": relatives.cache_stats(),
        "recommendations": _recommendations(total, token_healthy),
    }


@router.post("/clear-family-cache", summary="Clear the relatives cache and failed records")
async def clear_family_cache(relatives: RelativesResolver = Depends(get_relatives)):
    cleared = relatives.clear_cache()
    return {
        "success": True,
        "message": (
            f"Relatives cache cleared: {cleared['cache_size']} entries and "
            f"{cleared['failed_size']} failed attempts removed"
        ),
        **cleared,
    }


@router.post("/force-retry-family/{subject_id}", summary="Forget cached relatives for one id")
async def force_retry_family(subject_id: SubjectId, relatives: RelativesResolver = Depends(get_relatives)):
    relatives.force_retry(subject_id)
    return {
        "success": True,
        "message": f"Cache and failed attempts cleared for {subject_id}",
        "subject_id": subject_id,
        "timestamp": datetime.utcnow().isoformat(),
    }


@router.get("/family-cache-stats", summary="Relatives cache statistics")
async def family_cache_stats(relatives: RelativesResolver = Depends(get_relatives)):
    return relatives.cache_stats()
