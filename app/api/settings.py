"""Settings endpoints backing the UI "PingOne connection" page.

The API secret is write-only: it is stored (encrypted when
``PINGONE_SETTINGS_KEY`` is configured) but never returned.
"""
from __future__ import annotations
import logging
from typing import Any, Dict

from flask import Blueprint, current_app, jsonify, request

from app.core.bulk.errors import ValidationError
from app.core.pingone.regions import region_domain
from app.core.pingone.tokens import DEFAULT_REGION

bp = Blueprint("settings", __name__)

logger = logging.getLogger(__name__)

EDITABLE_KEYS = ("environmentId", "apiClientId", "apiSecret", "region", "populationId")
_QUOTES = "`'\""


def _mask(value: str) -> str:
    return f"***{value[-4:]}" if value else "not set"


def _store():
    from app.flask_app import get_services
    return get_services(current_app)


def _public_view(services) -> Dict[str, Any]:
    store = services.store
    return {
        "environmentId": store.get("environmentId") or "",
        "apiClientId": store.get("apiClientId") or "",
        "region": store.get("region") or DEFAULT_REGION,
        "populationId": store.get("populationId") or "",
        "hasApiSecret": bool(store.get("apiSecret")),
    }


@bp.route("/settings", methods=["GET"])
def get_settings():
    """Stored connection settings, secret masked."""
    return jsonify({"success": True, "data": _public_view(_store())})


@bp.route("/settings", methods=["POST"])
def save_settings():
    """Validate and persist connection settings, then drop the cached token."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")

    values = {key: str(data.get(key) or "").strip() for key in EDITABLE_KEYS if key in data}
    if "environmentId" in values:
        values["environmentId"] = values["environmentId"].strip(_QUOTES)
    if not values.get("environmentId") or not values.get("apiClientId"):
        raise ValidationError(
            "Missing required fields: Environment ID and API Client ID are required"
        )
    values["region"] = values.get("region") or DEFAULT_REGION
    region_domain(values["region"])

    services = _store()
    secret = values.pop("apiSecret", "")
    if secret:
        if services.config.settings_encryption_key:
            secret = services.store.encrypt(secret)
        values["apiSecret"] = secret
        # Legacy key is read first and would shadow the new value
        values["api-secret"] = ""

    services.store.save(values)
    services.tokens.clear()
    logger.info(
        "Settings saved: environment=%s region=%s client_id=%s secret_updated=%s",
        _mask(values["environmentId"]),
        values["region"],
        _mask(values["apiClientId"]),
        bool(secret),
    )
    return jsonify({
        "success": True,
        "message": "Settings saved successfully",
        "data": _public_view(services),
    })
