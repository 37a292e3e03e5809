"""
Associated-persons result, cache entry and failed-attempt record.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Tuple


RELATIVE_BUCKETS: Tuple[str, ...] = ("family", "data", "results", "relatives", "parentesco")


@dataclass
class RelativesResult:
    """Combined member lists, one list per known source bucket."""
    family: List[Dict[str, Any]] = field(default_factory=list)
    data: List[Dict[str, Any]] = field(default_factory=list)
    results: List[Dict[str, Any]] = field(default_factory=list)
    relatives: List[Dict[str, Any]] = field(default_factory=list)
    parentesco: List[Dict[str, Any]] = field(default_factory=list)

    def bucket(self, name: str) -> List[Dict[str, Any]]:
        return getattr(self, name)

    @property
    def total_members(self) -> int:
        return sum(len(self.bucket(name)) for name in RELATIVE_BUCKETS)

    def members(self) -> Iterable[Dict[str, Any]]:
        for name in RELATIVE_BUCKETS:
            yield from self.bucket(name)

    def extend(self, other: "RelativesResult") -> None:
        for name in RELATIVE_BUCKETS:
            self.bucket(name).extend(other.bucket(name))

    def copy(self) -> "RelativesResult":
        return RelativesResult(**{name: list(self.bucket(name)) for name in RELATIVE_BUCKETS})

    def counts(self) -> Dict[str, int]:
        return {name: len(self.bucket(name)) for name in RELATIVE_BUCKETS}

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {name: list(self.bucket(name)) for name in RELATIVE_BUCKETS}

    @classmethod
    def from_payload(cls, payload: Any) -> "RelativesResult":
        """Pick the known buckets out of an already-shaped payload."""
        result = cls()
        if isinstance(payload, dict):
            for name in RELATIVE_BUCKETS:
                value = payload.get(name)
                if isinstance(value, list):
                    result.bucket(name).extend(value)
        elif isinstance(payload, list):
            result.family.extend(payload)
        return result


@dataclass
class FamilyCacheEntry:
    """Cached resolution for one subject id."""
    result: RelativesResult
    captured_at: float


@dataclass
class FailedAttemptRecord:
    """Marks a subject id whose resolution found no members."""
    failed_at: float
    attempts: int = 3
