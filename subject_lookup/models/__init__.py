"""
Data models for the lookup engine.
"""

from subject_lookup.models.session import SessionState, SessionStatus
from subject_lookup.models.capture import (
    CATEGORIES,
    CRITICAL_CATEGORIES,
    SubjectCapture,
    match_category
)
from subject_lookup.models.relatives import (
    RELATIVE_BUCKETS,
    FailedAttemptRecord,
    FamilyCacheEntry,
    RelativesResult
)

__all__ = [
    'SessionState',
    'SessionStatus',
    'CATEGORIES',
    'CRITICAL_CATEGORIES',
    'SubjectCapture',
    'match_category',
    'RELATIVE_BUCKETS',
    'FailedAttemptRecord',
    'FamilyCacheEntry',
    'RelativesResult',
]
