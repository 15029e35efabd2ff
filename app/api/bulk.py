"""Bulk user administration endpoints.

All PingOne traffic from the browser goes through these routes; the
token never leaves the server except through ``/pingone/get-token``.

Architecture:
    Browser -> /import, /modify-users, ... -> BulkOrchestrator -> PingOneClient -> PingOne
    Browser <- /import/progress/<sessionId> (text/event-stream) <- ProgressChannel
"""
from __future__ import annotations
import datetime
import logging
import time
from typing import Any, Dict

from flask import Blueprint, Response, current_app, jsonify, request

from app.core.bulk.errors import ValidationError
from app.core.bulk.orchestrator import BulkOptions
from app.core.csv_records import parse_bool

bp = Blueprint("bulk", __name__)

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Request Helpers
# ─────────────────────────────────────────────────────────────────────────────
def _services():
    from app.flask_app import get_services
    return get_services(current_app)


def _uploaded_csv() -> bytes:
    """Content of the multipart ``file`` field."""
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        raise ValidationError("No file uploaded")
    return upload.read()


def _flag(source: Dict[str, Any], name: str, default: bool) -> bool:
    value = parse_bool(source.get(name))
    return default if value is None else value


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None and request.form:
        data = request.form.to_dict()
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _session_id(data: Dict[str, Any]) -> str:
    session_id = str(data.get("sessionId") or "").strip()
    if not session_id:
        raise ValidationError("sessionId is required")
    return session_id


def _wants_async() -> bool:
    return _flag(request.form, "async", False) or _flag(request.args, "async", False)


def _accepted(session):
    return jsonify({"success": True, "sessionId": session.session_id, "total": session.total})


# ─────────────────────────────────────────────────────────────────────────────
# Import
# ─────────────────────────────────────────────────────────────────────────────
@bp.route("/import", methods=["POST"])
def start_import():
    """Queue an import and return the session id to subscribe to."""
    content = _uploaded_csv()
    form = request.form
    options = BulkOptions(
        selected_population_id=form.get("selectedPopulationId", "").strip(),
        selected_population_name=form.get("selectedPopulationName", "").strip(),
        create_if_not_exists=_flag(form, "createIfNotExists", False),
        default_enabled=_flag(form, "defaultEnabled", True),
        generate_passwords=_flag(form, "generatePasswords", False),
        continue_on_conflict=_flag(form, "continueOnConflict", True),
    )
    session = _services().orchestrator.submit_import(content, options)
    return _accepted(session)


@bp.route("/import/progress/<session_id>")
def import_progress(session_id: str):
    """Server-Sent Events stream for one session."""
    services = _services()
    frames = services.channels.stream(session_id, services.config.keepalive_interval)
    return Response(
        frames,
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            # nginx must not buffer the stream
            "X-Accel-Buffering": "no",
        },
    )


@bp.route("/import/resolve-conflict", methods=["POST"])
def resolve_conflict():
    data = _json_body()
    session_id = _session_id(data)
    use_csv = data.get("useCsvPopulation")
    if isinstance(use_csv, str):
        use_csv = parse_bool(use_csv)
    _services().orchestrator.resolve_conflict(session_id, use_csv)
    return jsonify({"success": True, "sessionId": session_id, "useCsvPopulation": use_csv})


@bp.route("/import/resolve-invalid-population", methods=["POST"])
def resolve_invalid_population():
    data = _json_body()
    session_id = _session_id(data)
    population_id = str(data.get("selectedPopulationId") or "").strip()
    apply_to_all = _flag(data, "applyToAll", False)
    _services().orchestrator.resolve_invalid_population(session_id, population_id, apply_to_all)
    return jsonify({"success": True, "sessionId": session_id, "selectedPopulationId": population_id})


@bp.route("/import/cancel", methods=["POST"])
def cancel_import():
    """Stop a running session at its next batch boundary."""
    session_id = _session_id(_json_body())
    _services().orchestrator.cancel(session_id)
    return jsonify({"success": True, "sessionId": session_id, "message": "Cancellation requested"})


@bp.route("/import/status/<session_id>")
def import_status(session_id: str):
    return jsonify(_services().orchestrator.status(session_id))


# ─────────────────────────────────────────────────────────────────────────────
# Modify / Delete
# ─────────────────────────────────────────────────────────────────────────────
@bp.route("/modify-users", methods=["POST"])
def modify_users():
    """Update existing users from a CSV; optionally create missing ones."""
    content = _uploaded_csv()
    form = request.form
    options = BulkOptions(
        selected_population_id=form.get("defaultPopulationId", "").strip(),
        create_if_not_exists=_flag(form, "createIfNotExists", False),
        default_enabled=_flag(form, "defaultEnabled", True),
        generate_passwords=_flag(form, "generatePasswords", False),
    )
    orchestrator = _services().orchestrator
    session = orchestrator.submit_modify(content, options)
    if _wants_async():
        return _accepted(session)
    return jsonify(orchestrator.wait(session))


@bp.route("/delete-users", methods=["POST"])
def delete_users():
    """Delete the users listed in a CSV, optionally only within one population."""
    content = _uploaded_csv()
    orchestrator = _services().orchestrator
    session = orchestrator.submit_delete(content, request.form.get("populationId", "").strip())
    if _wants_async():
        return _accepted(session)
    return jsonify(orchestrator.wait(session))


@bp.route("/population-delete", methods=["POST"])
def population_delete():
    """Delete every user of a population."""
    data = _json_body()
    orchestrator = _services().orchestrator
    session = orchestrator.submit_population_delete(
        str(data.get("populationId") or "").strip(),
        str(data.get("populationName") or "").strip(),
    )
    if _flag(data, "async", False):
        return _accepted(session)
    return jsonify(orchestrator.wait(session))


# ─────────────────────────────────────────────────────────────────────────────
# Export
# ─────────────────────────────────────────────────────────────────────────────
@bp.route("/export-users", methods=["POST"])
def export_users():
    """Export users as a CSV attachment or as JSON."""
    data = _json_body()
    fmt = str(data.get("format") or "csv").lower()
    result = _services().orchestrator.export_users(
        population_id=str(data.get("populationId") or "").strip(),
        fields=str(data.get("fields") or "basic").lower(),
        fmt=fmt,
        ignore_disabled=_flag(data, "ignoreDisabledUsers", False),
    )
    if fmt == "json":
        return jsonify({
            "success": True,
            "total": result.total,
            "ignored": len(result.ignored),
            "users": result.rows,
        })
    filename = f"pingone-users-export-{datetime.date.today().isoformat()}.csv"
    return Response(
        result.content,
        mimetype="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "X-Export-Total": str(result.total),
            "X-Export-Ignored": str(len(result.ignored)),
        },
    )


# ─────────────────────────────────────────────────────────────────────────────
# PingOne pass-through
# ─────────────────────────────────────────────────────────────────────────────
@bp.route("/pingone/populations")
def list_populations():
    return jsonify(_services().orchestrator.populations.summaries())


@bp.route("/pingone/get-token", methods=["POST"])
def get_token():
    """Obtain a token with the configured credentials, or test explicit ones."""
    tokens = _services().tokens
    custom = request.get_json(silent=True) or None
    logger.info("Token requested (explicit credentials: %s)", bool(custom))
    if custom:
        token = tokens.request_token(custom)
        access_token, token_type = token.access_token, token.token_type
        expires_in = max(0, int(token.expires_at - time.time()))
    else:
        access_token = tokens.get_access_token()
        info = tokens.token_info() or {}
        token_type = info.get("tokenType", "Bearer")
        expires_in = info.get("expiresIn", 0)
    return jsonify({
        "success": True,
        "access_token": access_token,
        "expires_in": expires_in,
        "token_type": token_type,
        "message": "Token retrieved successfully",
    })


@bp.route("/pingone/token-info")
def token_info():
    info = _services().tokens.token_info()
    return jsonify(info or {"isValid": False})
