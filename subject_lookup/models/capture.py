"""
Per-lookup accumulator for data harvested from the portal's own API calls.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


CATEGORIES: Tuple[str, ...] = (
    "general",
    "contacts",
    "vehicles",
    "labour",
    "property",
    "favorites",
    "family",
)

CRITICAL_CATEGORIES: Tuple[str, ...] = ("general", "contacts")

# URL substrings (relative to the API host) that identify each category
CATEGORY_PATHS: Dict[str, str] = {
    "general": "/ds/crn/client/info/general/new",
    "contacts": "/ds/crn/client/info/contact",
    "vehicles": "/ds/crm/client/vehicle",
    "labour": "/ds/crn/client/info/labournew",
    "property": "/ds/crm/client/property",
    "favorites": "/ds/crn/client/favorites",
    "family": "/ds/crn/client/info/family/new",
}


def match_category(url: str, api_host: str) -> Optional[str]:
    """
    Map a response URL to its data category.

    Args:
        url: Full response URL
        api_host: Portal API host (no scheme)

    Returns:
        Category name, or None for unrelated traffic
    """
    for category, path in CATEGORY_PATHS.items():
        if f"{api_host}{path}" in url:
            return category
    return None


@dataclass
class SubjectCapture:
    """Raw category payloads collected for one subject lookup."""
    subject_id: str
    payloads: Dict[str, Any] = field(default_factory=lambda: {c: {} for c in CATEGORIES})
    received: Dict[str, bool] = field(default_factory=lambda: {c: False for c in CATEGORIES})
    partial: bool = False
    attempts: int = 1

    def record(self, category: str, payload: Any) -> None:
        """Store the last-seen payload for a category and flag it received."""
        self.payloads[category] = payload
        self.received[category] = True

    def has_critical(self) -> bool:
        return all(self.received[c] for c in CRITICAL_CATEGORIES)

    def missing_critical(self) -> List[str]:
        return [c for c in CRITICAL_CATEGORIES if not self.received[c]]

    def to_dict(self) -> Dict[str, Any]:
        """Raw payload view, keyed the way the portal names its sections."""
        data = {f"info_{category}": self.payloads[category] for category in CATEGORIES}
        data["received"] = dict(self.received)
        data["partial"] = self.partial
        return data
