"""CSV parsing and column mapping for bulk user files."""
from __future__ import annotations
import csv
import io
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from app.core.bulk.errors import ValidationError

# Lower-cased header -> UserRecord attribute
COLUMN_ALIASES = {
    "username": "username",
    "email": "email",
    "firstname": "given_name",
    "givenname": "given_name",
    "first_name": "given_name",
    "lastname": "family_name",
    "familyname": "family_name",
    "last_name": "family_name",
    "populationid": "population_id",
    "population_id": "population_id",
    "password": "password",
    "enabled": "enabled",
    "phonenumber": "phone_number",
    "phone_number": "phone_number",
    "title": "title",
    "department": "department",
}

TRUE_VALUES = {"true", "1", "yes", "y"}
FALSE_VALUES = {"false", "0", "no", "n"}


def parse_bool(value: Any) -> Optional[bool]:
    """Parse a CSV boolean; empty or unrecognised values give None."""
    if isinstance(value, bool):
        return value
    text = str(value or "").strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    return None


@dataclass
class UserRecord:
    """One data row of a bulk CSV file."""
    index: int
    username: str = ""
    email: str = ""
    given_name: str = ""
    family_name: str = ""
    population_id: str = ""
    password: str = ""
    enabled: Optional[bool] = None
    phone_number: str = ""
    title: str = ""
    department: str = ""
    extra: Dict[str, str] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return self.username or self.email

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "username": self.username,
            "email": self.email,
            "populationId": self.population_id,
        }


def parse_csv(content: Union[str, bytes]) -> List[UserRecord]:
    """Parse CSV text into records.

    Rows lacking both username and email are dropped; ``index`` is the
    record's 0-based position among the kept rows.

    Raises:
        ValidationError: If the content is not UTF-8 or has no header row.
    """
    if isinstance(content, bytes):
        try:
            content = content.decode("utf-8-sig")
        except UnicodeDecodeError:
            raise ValidationError("CSV file must be UTF-8 encoded")
    content = content.lstrip("\ufeff")

    reader = csv.DictReader(io.StringIO(content))
    if not reader.fieldnames:
        raise ValidationError("CSV file is empty")

    records: List[UserRecord] = []
    for row in reader:
        values: Dict[str, Any] = {}
        extra: Dict[str, str] = {}
        for header, raw in row.items():
            if header is None:
                continue
            value = (raw or "").strip() if isinstance(raw, str) else ""
            attribute = COLUMN_ALIASES.get(header.strip().lower())
            if attribute is None:
                extra[header.strip()] = value
            elif value and not values.get(attribute):
                values[attribute] = value
        if not values.get("username") and not values.get("email"):
            continue
        values["enabled"] = parse_bool(values.get("enabled"))
        records.append(UserRecord(index=len(records), extra=extra, **values))
    return records
