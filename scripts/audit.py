"""Audit logging utilities for bulk PingOne operations."""

from __future__ import annotations
import datetime
import hashlib
import hmac
import json
import os
import sys
from pathlib import Path
from typing import Any, Literal

AUDIT_LOG_DIR = Path(os.environ.get("AUDIT_LOG_DIR", ".runtime/audit"))
_default_secret_paths: list[Path] = []
_env_secret_path_str = os.environ.get("AUDIT_LOG_SIGNING_KEY_FILE")
_env_secret_path: Path | None = None
if _env_secret_path_str:
    _env_secret_path = Path(_env_secret_path_str)
    _default_secret_paths.append(_env_secret_path)
_default_secret_paths.extend([
    Path(".runtime/secrets/audit_log_signing_key"),
    Path(".runtime/audit/audit_log_signing_key"),
])
AUDIT_LOG_FILENAME = "bulk-events.jsonl"


def audit_log_file() -> Path:
    """Current audit file; resolved per call so AUDIT_LOG_DIR can change at runtime."""
    return Path(os.environ.get("AUDIT_LOG_DIR", str(AUDIT_LOG_DIR))) / AUDIT_LOG_FILENAME


def _get_signing_key() -> bytes:
    """Get the audit signing key from a key file or the environment."""
    if _env_secret_path and _env_secret_path.exists():
        try:
            return _env_secret_path.read_text(encoding="utf-8").strip().encode("utf-8")
        except OSError:
            pass
    if "AUDIT_LOG_SIGNING_KEY" in os.environ:
        return os.environ.get("AUDIT_LOG_SIGNING_KEY", "").strip().encode("utf-8")
    for path in _default_secret_paths:
        if path.exists():
            try:
                return path.read_text(encoding="utf-8").strip().encode("utf-8")
            except OSError:
                continue
    demo_default = os.environ.get("AUDIT_LOG_SIGNING_KEY_DEMO", "demo-audit-signing-key-change-in-production")
    return demo_default.encode("utf-8") if demo_default else b""


EventType = Literal[
    "bulk_import", "bulk_modify", "bulk_delete", "bulk_population_delete",
    "export", "export_ignored_user",
]


def _ensure_audit_dir(directory: Path) -> None:
    """Create audit directory with restricted permissions."""
    directory.mkdir(parents=True, exist_ok=True)
    directory.chmod(0o700)


def _sign_event(event: dict[str, Any]) -> str:
    """Generate HMAC-SHA256 signature for audit event."""
    signing_key = _get_signing_key()
    if not signing_key:
        return ""
    # Canonical JSON representation for signing
    canonical = json.dumps(event, sort_keys=True, separators=(",", ":"))
    return hmac.new(signing_key, canonical.encode("utf-8"), hashlib.sha256).hexdigest()


def log_bulk_event(
    event_type: EventType,
    subject: str,
    *,
    operator: str = "system",
    session_id: str | None = None,
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> None:
    """Append a signed event to the audit trail.

    Args:
        event_type: Kind of bulk operation
        subject: Username (per-user events) or population/session label
        operator: Who performed the operation ("web", "cli", ...)
        session_id: Bulk session the event belongs to
        details: Counts, population, reasons
        success: Whether the operation succeeded
    """
    log_file = audit_log_file()
    _ensure_audit_dir(log_file.parent)

    event = {
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "event_type": event_type,
        "subject": subject,
        "session_id": session_id,
        "operator": operator,
        "success": success,
        "details": details or {},
    }

    signature = _sign_event(event)
    if signature:
        event["signature"] = signature

    # Append to JSONL file (one JSON object per line)
    with log_file.open("a", encoding="utf-8") as f:
        f.write(json.dumps(event, ensure_ascii=False) + "\n")

    log_file.chmod(0o600)


def safe_log_bulk_event(
    event_type: EventType,
    subject: str,
    *,
    operator: str = "system",
    session_id: str | None = None,
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> bool:
    """Log a bulk event, never raising.

    Audit failures must not break a running job; they are reported on
    stderr instead.

    Returns:
        True if the event was written, False otherwise
    """
    try:
        log_bulk_event(
            event_type,
            subject,
            operator=operator,
            session_id=session_id,
            details=details,
            success=success,
        )
        return True
    except Exception as e:
        print(
            f"[audit] Warning: Failed to log {event_type} event for {subject}: {e}",
            file=sys.stderr
        )
        return False


def read_events(event_type: EventType | None = None) -> list[dict[str, Any]]:
    """Return logged events, optionally filtered by type."""
    log_file = audit_log_file()
    if not log_file.exists():
        return []
    events = []
    with log_file.open("r", encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if event_type is None or event.get("event_type") == event_type:
                events.append(event)
    return events


def verify_audit_log() -> tuple[int, int]:
    """Verify all signatures in the audit log.

    Returns:
        Tuple of (total_events, valid_signatures)
    """
    total = 0
    valid = 0
    for event in read_events():
        total += 1
        stored_sig = event.pop("signature", "")
        if not stored_sig:
            continue
        if hmac.compare_digest(stored_sig, _sign_event(event)):
            valid += 1
    return total, valid


if __name__ == "__main__":
    total, valid = verify_audit_log()
    print(f"Audit log: {valid}/{total} events with valid signatures")
    sys.exit(0 if total == valid else 1)
