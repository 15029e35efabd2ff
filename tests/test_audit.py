"""Unit tests for bulk operation audit logging."""

import json
from pathlib import Path

import pytest

from scripts import audit


@pytest.fixture
def temp_audit_dir(monkeypatch, tmp_path):
    """Provide isolated audit directory for each test."""
    audit_dir = tmp_path / "audit"
    audit_file = audit_dir / "bulk-events.jsonl"

    monkeypatch.setenv("AUDIT_LOG_DIR", str(audit_dir))
    # Set signing key for tests (loaded by _get_signing_key() from environment)
    monkeypatch.setenv("AUDIT_LOG_SIGNING_KEY", "test-signing-key-for-audit-trail")

    yield audit_dir, audit_file


def test_log_bulk_event_creates_file(temp_audit_dir):
    """Test that logging creates the audit file."""
    _, audit_file = temp_audit_dir

    assert not audit_file.exists()

    audit.log_bulk_event(
        "bulk_import",
        "Engineering",
        operator="web",
        session_id="sess-1",
        details={"counts": {"success": 10}},
        success=True,
    )

    assert audit_file.exists()
    assert audit_file.stat().st_mode & 0o777 == 0o600  # Check file permissions


def test_log_bulk_event_creates_valid_json(temp_audit_dir):
    _, audit_file = temp_audit_dir

    audit.log_bulk_event("export_ignored_user", "alice", operator="web", details={"reason": "disabled"})

    event = json.loads(audit_file.read_text().splitlines()[0])
    assert event["event_type"] == "export_ignored_user"
    assert event["subject"] == "alice"
    assert event["operator"] == "web"
    assert event["session_id"] is None
    assert event["success"] is True
    assert "timestamp" in event
    assert "signature" in event


def test_read_events_filters_by_type(temp_audit_dir):
    for name in ("a", "b"):
        audit.log_bulk_event("export_ignored_user", name)
    audit.log_bulk_event("export", "all-populations", details={"total": 7})

    assert [e["subject"] for e in audit.read_events("export_ignored_user")] == ["a", "b"]
    assert len(audit.read_events()) == 3


def test_verify_audit_log_with_valid_signatures(temp_audit_dir):
    """Test signature verification for valid events."""
    for i in range(5):
        audit.log_bulk_event("bulk_delete", f"session-{i}", operator="cli")

    total, valid = audit.verify_audit_log()
    assert total == 5
    assert valid == 5


def test_verify_audit_log_detects_tampering(temp_audit_dir):
    """Test that signature verification detects tampered events."""
    _, audit_file = temp_audit_dir

    audit.log_bulk_event("bulk_population_delete", "Sales", details={"counts": {"success": 3}})

    event = json.loads(audit_file.read_text().splitlines()[0])
    # Modify the counts without updating signature
    event["details"]["counts"]["success"] = 0
    audit_file.write_text(json.dumps(event) + "\n")

    total, valid = audit.verify_audit_log()
    assert total == 1
    assert valid == 0  # Signature invalid


def test_log_event_without_signing_key(temp_audit_dir, monkeypatch):
    """Test logging when no signing key is configured."""
    monkeypatch.setenv("AUDIT_LOG_SIGNING_KEY", "")
    _, audit_file = temp_audit_dir

    audit.log_bulk_event("bulk_modify", "sess-1")

    event = json.loads(audit_file.read_text().splitlines()[0])
    # Should still log, but without signature
    assert "signature" not in event


def test_safe_log_never_raises(temp_audit_dir, monkeypatch, capsys):
    def explode(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(audit, "log_bulk_event", explode)
    assert audit.safe_log_bulk_event("bulk_import", "sess-1") is False
    assert "disk full" in capsys.readouterr().err


def test_audit_directory_permissions(temp_audit_dir):
    """Test that audit directory has restricted permissions."""
    audit_dir, _ = temp_audit_dir

    audit.log_bulk_event("bulk_import", "test")

    # Check directory permissions (should be 700)
    assert audit_dir.stat().st_mode & 0o777 == 0o700


def test_verify_empty_audit_log(temp_audit_dir):
    """Test verification when no events exist."""
    total, valid = audit.verify_audit_log()
    assert total == 0
    assert valid == 0
    assert isinstance(audit.audit_log_file(), Path)
