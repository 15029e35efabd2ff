"""Shaping PingOne user objects into flat export rows, and rendering CSV/JSON."""
from __future__ import annotations
import csv
import io
import json
import logging
from typing import Any, Dict, Iterable, List

logger = logging.getLogger(__name__)

FIELD_MODES = ("basic", "custom", "all")
FORMATS = ("csv", "json")

BASIC_FIELDS = ("id", "username", "email", "populationId", "populationName", "enabled")


def _flatten_object(key: str, value: Dict[str, Any], mode: str) -> Dict[str, Any]:
    if key == "name":
        return {"givenName": value.get("given", ""), "familyName": value.get("family", "")}
    if key == "population":
        return {"populationId": value.get("id", ""), "populationName": value.get("name", "")}
    if key == "environment":
        return {"environmentId": value.get("id", "")}
    if key == "account":
        return {"accountId": value.get("id", "")}
    if key == "identityProvider":
        flat = {"identityProviderType": value.get("type", "")}
        if mode == "all":
            flat["identityProviderName"] = value.get("name", "")
        return flat
    if key == "lifecycle":
        return {"lifecycleStatus": value.get("status", "")}
    if key == "address":
        return {
            "streetAddress": value.get("streetAddress", ""),
            "locality": value.get("locality", ""),
            "region": value.get("region", ""),
            "postalCode": value.get("postalCode", ""),
            "countryCode": value.get("countryCode", ""),
        }
    logger.warning("Dropping nested attribute '%s' from export", key)
    return {}


def shape_user(user: Dict[str, Any], mode: str = "basic") -> Dict[str, Any]:
    """Flatten one PingOne user for export.

    ``basic`` keeps a fixed set of columns. ``custom`` and ``all`` keep every
    scalar attribute and flatten the known nested objects; ``custom`` also
    leads with id and population columns. ``_links`` and unknown nested
    objects are dropped.
    """
    population = user.get("population") or {}
    if mode == "basic":
        return {
            "id": user.get("id"),
            "username": user.get("username", ""),
            "email": user.get("email", ""),
            "populationId": population.get("id", ""),
            "populationName": population.get("name", ""),
            "enabled": bool(user.get("enabled", False)),
        }
    if mode not in FIELD_MODES:
        raise ValueError(f"Unknown export field mode '{mode}'")

    row: Dict[str, Any] = {}
    if mode == "custom":
        row = {
            "id": user.get("id"),
            "populationId": population.get("id", ""),
            "populationName": population.get("name", ""),
        }
    for key, value in user.items():
        if key == "_links":
            continue
        if isinstance(value, dict):
            row.update(_flatten_object(key, value, mode))
        elif isinstance(value, list):
            logger.warning("Dropping list attribute '%s' from export", key)
        else:
            row[key] = value
    return row


def _columns(rows: List[Dict[str, Any]]) -> List[str]:
    columns: List[str] = []
    seen = set()
    for row in rows:
        for key in row:
            if key not in seen:
                seen.add(key)
                columns.append(key)
    return columns


def render_csv(rows: Iterable[Dict[str, Any]]) -> str:
    rows = list(rows)
    if not rows:
        return ""
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=_columns(rows), restval="", lineterminator="\n")
    writer.writeheader()
    for row in rows:
        writer.writerow({k: "" if v is None else v for k, v in row.items()})
    return buffer.getvalue()


def render_json(rows: Iterable[Dict[str, Any]]) -> str:
    return json.dumps(list(rows), indent=2)
