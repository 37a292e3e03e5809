"""
Subject lookup endpoints.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from subject_lookup.api.dependencies import SubjectId, get_orchestrator
from subject_lookup.core.logging_config import bind_context
from subject_lookup.services.data_transform import transform_to_structured
from subject_lookup.services.query_orchestrator import QueryOrchestrator

router = APIRouter()
logger = logging.getLogger(__name__)


async def _lookup(subject_id: str, orchestrator: QueryOrchestrator) -> Dict[str, Any]:
    bind_context(subject_id=subject_id)
    capture = await orchestrator.scrape_subject(subject_id)
    return transform_to_structured(capture)


@router.get(
    "/title/{subject_id}",
    status_code=status.HTTP_200_OK,
    summary="Look up a subject",
    description="Return the structured client record for a national id"
)
async def get_title(
    subject_id: SubjectId,
    orchestrator: QueryOrchestrator = Depends(get_orchestrator)
):
    return await _lookup(subject_id, orchestrator)


@router.get(
    "/client/{subject_id}",
    status_code=status.HTTP_200_OK,
    summary="Look up a client",
    description="Return the structured client record for a national id"
)
async def get_client(
    subject_id: SubjectId,
    orchestrator: QueryOrchestrator = Depends(get_orchestrator)
):
    """
    Client lookup.

    Status codes:
    - 200: Record returned (possibly partial)
    - 503: Admission queue full or browser down; honour Retry-After
    - 500: Lookup failed after retries
    """
    return await _lookup(subject_id, orchestrator)
