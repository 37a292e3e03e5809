"""
Reshape a raw subject capture into the flat client record served over HTTP.

Pure shape mapping: values are copied, renamed and date-normalized, never
validated.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Union

from subject_lookup.models.capture import SubjectCapture
from subject_lookup.services.relatives_shapes import extract_relatives


def convert_date(value: Any) -> Optional[str]:
    """
    Convert a DD/MM/YYYY date to YYYY-MM-DD.

    Returns:
        ISO date string, or None for blank or unrecognised input
    """
    if not isinstance(value, str) or not value.strip():
        return None
    parts = value.strip().split("/")
    if len(parts) != 3:
        return None
    day, month, year = parts
    return f"{year}-{month.zfill(2)}-{day.zfill(2)}"


def _first(member: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = member.get(key)
        if value:
            return value
    return None


def _transform_contacts(contacts: Mapping[str, Any], client_id: Any, now: str) -> List[Dict[str, Any]]:
    phones = contacts.get("phones")
    if not isinstance(phones, list):
        return []
    return [
        {
            "id": None,
            "phone_number": phone.get("phone"),
            "phone_type": phone.get("type"),
            "counter_correct_number": None,
            "counter_incorrect_number": None,
            "client_id": client_id,
            "created_at": now,
            "updated_at": now,
        }
        for phone in phones if isinstance(phone, Mapping)
    ]


def _transform_emails(contacts: Mapping[str, Any], client_id: Any, now: str) -> List[Dict[str, Any]]:
    emails = contacts.get("emails")
    if not isinstance(emails, list):
        return []
    return [
        {
            "id": None,
            "direction": email.get("email"),
            "active": 1,
            "client_id": client_id,
            "created_at": now,
            "updated_at": now,
        }
        for email in emails if isinstance(email, Mapping)
    ]


def _address_record(address: Any, client_id: Any, now: str, **fields) -> Dict[str, Any]:
    return {
        "id": None,
        "address": address,
        "type": fields.get("type") or "actualizado",
        "province": fields.get("province") or "sin datos",
        "city": fields.get("city") or "sin datos",
        "is_valid": fields.get("is_valid") or "NO",
        "client_id": client_id,
        "created_at": now,
        "updated_at": now,
    }


def _transform_addresses(
    contacts: Mapping[str, Any],
    general: Mapping[str, Any],
    client_id: Any,
    now: str
) -> List[Dict[str, Any]]:
    addresses = []

    for entry in contacts.get("address") or []:
        if isinstance(entry, Mapping):
            addresses.append(_address_record(
                entry.get("address"), client_id, now,
                type=entry.get("type"),
                province=entry.get("province"),
                city=entry.get("city"),
                is_valid=entry.get("is_valid"),
            ))
        elif entry:
            addresses.append(_address_record(entry, client_id, now))

    general_address = general.get("address")
    if isinstance(general_address, str) and general_address.strip():
        addresses.append(_address_record(general_address, client_id, now))

    return addresses


def _unique_members(members: List[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    seen = set()
    unique = []
    for member in members:
        identifier = (
            _first(member, "dni", "identification", "cedula")
            or _first(member, "fullname", "name", "nombre")
            or json.dumps(member, sort_keys=True, default=str)
        )
        if identifier in seen:
            continue
        seen.add(identifier)
        unique.append(member)
    return unique


def _transform_family(
    general: Mapping[str, Any],
    family: Any,
    client_id: Any,
    now: str
) -> List[Dict[str, Any]]:
    members: List[Mapping[str, Any]] = []
    members.extend(extract_relatives(general).members())
    members.extend(extract_relatives(family).members())

    parents = []
    for member in _unique_members(members):
        relationship = _first(member, "relationship", "parentesco", "relation")
        death = member.get("dateOfDeath")
        parents.append({
            "id": None,
            "client_id": client_id,
            "type": str(relationship).upper() if relationship else None,
            "relationship_client_id": None,
            "created_at": now,
            "updated_at": now,
            "name": _first(member, "fullname", "name", "nombre"),
            "identification": _first(member, "dni", "identification", "cedula"),
            "birth": convert_date(_first(member, "dateOfBirth", "birthDate", "fechaNacimiento")),
            "gender": _first(member, "gender", "genero", "sexo"),
            "state_civil": _first(member, "civilStatus", "estadoCivil", "maritalStatus"),
            "death": convert_date(death) if isinstance(death, str) and death.strip() else None,
            "age": _first(member, "age", "edad"),
        })
    return parents


def transform_to_structured(
    raw: Union[SubjectCapture, Mapping[str, Any]],
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    Build the client record from a capture.

    Args:
        raw: A SubjectCapture or its `to_dict()` form
        now: Timestamp for created_at/updated_at (defaults to utcnow)

    Returns:
        Flat client record with contacts, emails, addresses and parents
    """
    data = raw.to_dict() if isinstance(raw, SubjectCapture) else raw
    general = data.get("info_general") or {}
    contacts = data.get("info_contacts") or {}
    family = data.get("info_family") or {}
    if not isinstance(general, Mapping):
        general = {}
    if not isinstance(contacts, Mapping):
        contacts = {}

    stamp = (now or datetime.utcnow()).isoformat()
    client_id = general.get("id")
    death = general.get("dateOfDeath")

    record: Dict[str, Any] = {
        "id": client_id,
        "identification": general.get("dni"),
        "uses_parent_identification": 0,
        "parent_identification": None,
        "name": general.get("fullname"),
        "email": None,
        "micro_activa": None,
        "birth": convert_date(general.get("dateOfBirth")),
        "death": convert_date(death) if isinstance(death, str) and death.strip() else None,
        "gender": general.get("gender"),
        "state_civil": general.get("civilStatus"),
        "economic_activity": None,
        "economic_area": None,
        "nationality": general.get("citizenship"),
        "profession": general.get("profession"),
        "place_birth": general.get("placeOfBirth"),
        "salary": general.get("salary"),
        "created_at": stamp,
        "updated_at": stamp,
        "age": general.get("age"),
        "contacts": _transform_contacts(contacts, client_id, stamp),
        "parents": _transform_family(general, family, client_id, stamp),
        "address": _transform_addresses(contacts, general, client_id, stamp),
        "emails": _transform_emails(contacts, client_id, stamp),
    }

    if record["emails"]:
        record["email"] = record["emails"][0]["direction"]

    return record
