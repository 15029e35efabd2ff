"""Diffing CSV records against existing PingOne users, and create payloads."""
from __future__ import annotations
import secrets
import string
from typing import Any, Dict, Optional

from app.core.csv_records import UserRecord

# UserRecord attribute -> PingOne attribute path. The CSV headers
# firstName/givenName and lastName/familyName both land on the name fields.
FIELD_MAPPINGS = {
    "given_name": "name.given",
    "family_name": "name.family",
    "email": "email",
    "phone_number": "phoneNumber",
    "title": "title",
    "department": "department",
}

PASSWORD_ALPHABET = string.ascii_letters + string.digits


def diff_user(record: UserRecord, existing: Dict[str, Any]) -> Dict[str, Any]:
    """Return the PATCH body needed to bring ``existing`` in line with ``record``.

    Only mapped fields with a non-empty CSV value are compared. An empty
    dict means nothing changed and no update should be sent.
    """
    changes: Dict[str, Any] = {}
    current_name = existing.get("name") or {}
    for attribute, api_field in FIELD_MAPPINGS.items():
        value = getattr(record, attribute)
        if not value:
            continue
        if api_field.startswith("name."):
            part = api_field.split(".", 1)[1]
            if value != current_name.get(part):
                changes.setdefault("name", dict(current_name))[part] = value
        elif value != existing.get(api_field):
            changes[api_field] = value
    if changes:
        # PingOne expects the identifying attributes on every update
        changes["username"] = existing.get("username")
        changes.setdefault("email", existing.get("email"))
    return changes


def generate_password(length: int = 16) -> str:
    """Random password meeting PingOne's default complexity policy."""
    while True:
        candidate = "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length - 2)) + "!" + secrets.choice(string.digits)
        if any(c.islower() for c in candidate) and any(c.isupper() for c in candidate):
            return candidate


def build_create_payload(
    record: UserRecord,
    population_id: str,
    default_enabled: bool = True,
    generate_passwords: bool = False,
) -> Dict[str, Any]:
    """PingOne create-user body; username defaults to the email."""
    payload: Dict[str, Any] = {
        "name": {"given": record.given_name, "family": record.family_name},
        "email": record.email,
        "username": record.username or record.email,
        "population": {"id": population_id},
        "enabled": default_enabled if record.enabled is None else record.enabled,
    }
    for attribute in ("phone_number", "title", "department"):
        value = getattr(record, attribute)
        if value:
            payload[FIELD_MAPPINGS[attribute]] = value
    password: Optional[str] = record.password or (generate_password() if generate_passwords else None)
    if password:
        payload["password"] = {"value": password}
    return payload
