"""
Heuristics for recognising associated-persons data in portal API payloads.

The portal spreads relatives over several undocumented endpoints whose
payloads use inconsistent key names and casing. Everything here works on
lower-cased key sets, so `fullName`, `FULLNAME` and `fullname` are the same
field. These are heuristics: they are tested against known shapes, not
against a schema.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

from subject_lookup.models.relatives import RELATIVE_BUCKETS, RelativesResult

logger = logging.getLogger(__name__)

FAMILY_KEYWORDS = (
    "familia", "parientes", "relatives", "relations", "members", "miembros",
    "padres", "parents", "hijos", "children", "hermanos", "siblings",
    "esposa", "esposo", "spouse", "conyuge", "pareja",
)

PERSON_FIELDS = frozenset({
    "fullname", "dni", "name", "relationship", "parentesco", "relation",
    "age", "gender", "dateofbirth", "civilstatus", "nombre", "cedula",
    "identificacion", "edad", "genero", "sexo", "fechanacimiento",
})

ID_FIELDS = ("dni", "identification", "cedula", "identificacion")
NAME_FIELDS = ("fullname", "name", "nombre")
AGE_FIELDS = ("age", "edad")
GENDER_FIELDS = ("gender", "genero", "sexo")

_WHITESPACE = re.compile(r"\s+")


def normalized_keys(item: Mapping[str, Any]) -> Dict[str, Any]:
    """Lower-case the keys of a record (first spelling wins on collision)."""
    keys: Dict[str, Any] = {}
    for key, value in item.items():
        keys.setdefault(str(key).lower(), value)
    return keys


def looks_like_relative(item: Any) -> bool:
    """
    Guess whether a record describes a person.

    Args:
        item: A list element from a portal payload

    Returns:
        True when at least two known person fields are present
    """
    if not isinstance(item, Mapping):
        return False
    return len(PERSON_FIELDS.intersection(normalized_keys(item))) >= 2


def is_family_key(key: str) -> bool:
    key = key.lower()
    return any(keyword in key for keyword in FAMILY_KEYWORDS)


def extract_relatives(payload: Any) -> RelativesResult:
    """
    Pull member lists out of one endpoint payload.

    Known buckets are kept as they are; a bare list goes to `family`; other
    list-valued keys go to `family` when the key name or the first record
    looks like family data.

    Args:
        payload: Parsed JSON body of a relatives endpoint

    Returns:
        RelativesResult with the members found (not deduplicated)
    """
    result = RelativesResult()

    if isinstance(payload, list):
        result.family.extend(item for item in payload if isinstance(item, Mapping))
        return result

    if not isinstance(payload, Mapping):
        return result

    for bucket in RELATIVE_BUCKETS:
        value = payload.get(bucket)
        if isinstance(value, list):
            result.bucket(bucket).extend(item for item in value if isinstance(item, Mapping))

    for key, value in payload.items():
        if key in RELATIVE_BUCKETS or not isinstance(value, list) or not value:
            continue
        if is_family_key(key):
            logger.debug(f"Family data under key '{key}' ({len(value)} items)")
            result.family.extend(item for item in value if isinstance(item, Mapping))
        elif looks_like_relative(value[0]):
            logger.debug(f"Person-like records under key '{key}' ({len(value)} items)")
            result.family.extend(item for item in value if isinstance(item, Mapping))

    return result


def _first(keys: Mapping[str, Any], fields: Iterable[str]) -> Optional[str]:
    for field in fields:
        value = keys.get(field)
        if value not in (None, ""):
            text = _WHITESPACE.sub(" ", str(value)).strip().lower()
            if text:
                return text
    return None


def member_identities(member: Mapping[str, Any]) -> List[str]:
    """
    Composite identity keys for a member record.

    National id, full name, id+name, name+age and name+gender. Two records
    sharing any of these keys are the same person.
    """
    keys = normalized_keys(member)
    member_id = _first(keys, ID_FIELDS)
    name = _first(keys, NAME_FIELDS)
    age = _first(keys, AGE_FIELDS)
    gender = _first(keys, GENDER_FIELDS)

    identities = []
    if member_id:
        identities.append(f"id:{member_id}")
    if name:
        identities.append(f"name:{name}")
    if member_id and name:
        identities.append(f"id-name:{member_id}-{name}")
    if name and age:
        identities.append(f"name-age:{name}-{age}")
    if name and gender:
        identities.append(f"name-gender:{name}-{gender}")
    return identities


def deduplicate(result: RelativesResult, seen: Optional[set] = None) -> RelativesResult:
    """
    Drop repeated members across all buckets, keeping the first occurrence.

    Args:
        result: Members to filter
        seen: Identities already taken (e.g. from passively captured data)

    Returns:
        A new RelativesResult
    """
    seen = set() if seen is None else seen
    unique = RelativesResult()

    for bucket in RELATIVE_BUCKETS:
        for member in result.bucket(bucket):
            identities = member_identities(member)
            if any(identity in seen for identity in identities):
                continue
            seen.update(identities)
            unique.bucket(bucket).append(member)

    return unique


def merge_relatives(existing: Any, addition: RelativesResult) -> Dict[str, List[Dict[str, Any]]]:
    """
    Merge resolved members into an already-captured family payload.

    Members already present in `existing` are not added twice.
    """
    base = RelativesResult.from_payload(existing)
    seen: set = set()
    for member in base.members():
        seen.update(member_identities(member))

    base.extend(deduplicate(addition, seen))

    merged = dict(existing) if isinstance(existing, Mapping) else {}
    merged.update(base.to_dict())
    return merged
