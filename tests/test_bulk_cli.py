import sys
from types import SimpleNamespace

import pytest
import requests

import scripts.bulk as bulk_cli
from app.core.progress_client import StreamMessage
from tests.conftest import FakeResponse


@pytest.fixture(autouse=True)
def restore_sys_argv():
    """Make sure every test sees a clean CLI invocation."""
    original = sys.argv[:]
    yield
    sys.argv = original


@pytest.fixture()
def csv_file(tmp_path):
    path = tmp_path / "users.csv"
    path.write_text("username,email,populationId\nalice,alice@example.com,pop-sales\n")
    return path


class FakeStream:
    """Stands in for ProgressStreamClient with a scripted message list."""

    instances = []

    def __init__(self, base_url, session_id, messages):
        self.base_url = base_url
        self.session_id = session_id
        self._messages = messages
        FakeStream.instances.append(self)

    def start(self):
        return self

    def messages(self, timeout=None):
        yield from self._messages

    def join(self, timeout=None):
        return None


def _install_stream(monkeypatch, messages):
    FakeStream.instances = []
    monkeypatch.setattr(
        bulk_cli, "ProgressStreamClient",
        lambda base_url, session_id: FakeStream(base_url, session_id, messages),
    )


def test_import_follows_progress_and_answers_conflict(monkeypatch, csv_file, capsys):
    posts = []

    def fake_post(url, files=None, data=None, json=None, timeout=None):
        posts.append(SimpleNamespace(url=url, data=data, json=json))
        if url.endswith("/import"):
            return FakeResponse(200, {"success": True, "sessionId": "sess-1", "total": 1})
        return FakeResponse(200, {"success": True})

    monkeypatch.setattr(requests, "post", fake_post)
    _install_stream(monkeypatch, [
        StreamMessage("event", "population_conflict", {"message": "Which population?"}),
        StreamMessage("event", "progress", {"message": "Processed 1 of 1 users", "counts": {"success": 1}}),
        StreamMessage("event", "complete", {"message": "Import completed", "counts": {"success": 1, "failed": 0}}),
        StreamMessage("closed", data={"outcome": "complete"}),
    ])

    sys.argv = [
        "bulk.py", "--base-url", "http://backend:4000/",
        "import", str(csv_file), "--population-id", "pop-default", "--on-conflict", "csv",
    ]
    with pytest.raises(SystemExit) as exc_info:
        bulk_cli.main()

    assert exc_info.value.code == 0
    assert posts[0].url == "http://backend:4000/import"
    assert posts[0].data["selectedPopulationId"] == "pop-default"
    assert posts[0].data["continueOnConflict"] == "true"
    assert posts[1].url == "http://backend:4000/import/resolve-conflict"
    assert posts[1].json == {"sessionId": "sess-1", "useCsvPopulation": True}
    assert FakeStream.instances[0].session_id == "sess-1"
    assert "[complete] Import completed" in capsys.readouterr().out


def test_import_error_event_exits_nonzero(monkeypatch, csv_file, capsys):
    monkeypatch.setattr(
        requests, "post",
        lambda *a, **kw: FakeResponse(200, {"success": True, "sessionId": "sess-2", "total": 1}),
    )
    _install_stream(monkeypatch, [
        StreamMessage("event", "error", {"message": "Authentication Failed", "counts": {}}),
        StreamMessage("closed", data={"outcome": "error"}),
    ])
    sys.argv = ["bulk.py", "import", str(csv_file)]
    with pytest.raises(SystemExit) as exc_info:
        bulk_cli.main()
    assert exc_info.value.code == 1
    assert "Authentication Failed" in capsys.readouterr().err


def test_backend_error_is_reported(monkeypatch, csv_file, capsys):
    monkeypatch.setattr(
        requests, "post",
        lambda *a, **kw: FakeResponse(503, {"error": "Service Unavailable", "message": "Server busy"}),
    )
    sys.argv = ["bulk.py", "modify", str(csv_file)]
    with pytest.raises(SystemExit) as exc_info:
        bulk_cli.main()
    assert exc_info.value.code == 1
    assert "[modify] Error: HTTP 503: Server busy" in capsys.readouterr().err


def test_delete_prints_summary(monkeypatch, csv_file, capsys):
    seen = {}

    def fake_post(url, files=None, data=None, timeout=None, **kwargs):
        seen.update(url=url, data=data)
        return FakeResponse(200, {"success": True, "results": {"deleted": 1}})

    monkeypatch.setattr(requests, "post", fake_post)
    sys.argv = ["bulk.py", "delete", str(csv_file), "--population-id", "pop-sales"]
    with pytest.raises(SystemExit) as exc_info:
        bulk_cli.main()
    assert exc_info.value.code == 0
    assert seen["url"].endswith("/delete-users")
    assert seen["data"] == {"populationId": "pop-sales"}
    assert '"deleted": 1' in capsys.readouterr().out


def test_export_writes_file(monkeypatch, tmp_path):
    monkeypatch.setattr(
        requests, "post",
        lambda url, json=None, timeout=None: FakeResponse(200, text="id,username\n1,alice\n"),
    )
    output = tmp_path / "out.csv"
    sys.argv = ["bulk.py", "export", "--population-id", "pop-sales", "-o", str(output)]
    bulk_cli.main()
    assert output.read_text() == "id,username\n1,alice\n"


def test_populations_listing(monkeypatch, capsys):
    monkeypatch.setattr(requests, "get", lambda url, timeout=None: FakeResponse(200, [
        {"id": "pop-default", "name": "Default", "userCount": 3, "default": True},
        {"id": "pop-sales", "name": "Sales", "userCount": 0, "default": False},
    ]))
    sys.argv = ["bulk.py", "populations"]
    bulk_cli.main()
    out = capsys.readouterr().out.splitlines()
    assert out[0] == "* pop-default  Default  (3 users)"
    assert out[1] == "  pop-sales  Sales  (0 users)"


def test_population_delete_requires_confirmation(monkeypatch):
    monkeypatch.setattr("builtins.input", lambda prompt: "n")

    def fail_if_called(*args, **kwargs):
        raise AssertionError("population delete must not be sent without confirmation")

    monkeypatch.setattr(requests, "post", fail_if_called)
    sys.argv = ["bulk.py", "population-delete", "pop-sales"]
    with pytest.raises(SystemExit) as exc_info:
        bulk_cli.main()
    assert exc_info.value.code == 1
