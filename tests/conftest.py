"""Pytest shared fixtures: in-memory PingOne, test configuration and app wiring."""
import json
import os
import pathlib
import re
import sys
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qs, urlencode, urlsplit

# Add project root to Python path
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Configure test environment BEFORE any app imports
os.environ.setdefault("DEMO_MODE", "true")

import pytest
import requests

from app.config.settings import AppConfig
from app.flask_app import build_services, create_app

ENV_ID = "env-123"
CLIENT_ID = "client-id"
CLIENT_SECRET = "client-secret"
API_BASE = "https://api.pingone.com/v1"
TOKEN_URL = f"https://auth.pingone.com/{ENV_ID}/as/token"

_FILTER_TERM = re.compile(r'([\w.]+) eq "((?:[^"\\]|\\.)*)"')


def no_sleep(_seconds: float) -> None:
    return None


# ─────────────────────────────────────────────────────────────────────────────
# Fake HTTP layer
# ─────────────────────────────────────────────────────────────────────────────
class FakeResponse:
    """Just enough of ``requests.Response`` for the gateway and token provider."""

    def __init__(
        self,
        status_code: int = 200,
        payload: Any = None,
        text: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        lines: Optional[List[str]] = None,
    ):
        self.status_code = status_code
        self._payload = payload
        self.headers = dict(headers or {})
        if payload is not None:
            self.text = json.dumps(payload)
            self.headers.setdefault("Content-Type", "application/json")
        else:
            self.text = text or ""
        self.content = self.text.encode("utf-8")
        self.reason = "Fake"
        self._lines = lines or []
        self.closed = False

    def json(self):
        if self._payload is None:
            return json.loads(self.text)
        return self._payload

    def iter_lines(self, decode_unicode: bool = False):
        for line in self._lines:
            if isinstance(line, Exception):
                raise line
            yield line

    def close(self):
        self.closed = True


class FakePingOne:
    """In-memory PingOne environment serving token, user and population endpoints.

    ``overrides`` are consulted first: each is called with
    ``(method, url, kwargs)`` and may return a FakeResponse (or raise) to
    short-circuit normal handling.
    """

    def __init__(self):
        self.populations: Dict[str, Dict[str, Any]] = {}
        self.users: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.token_requests = 0
        self.issued_tokens: List[str] = []
        self.revoked_tokens = set()
        self.overrides: List[Callable[[str, str, Dict[str, Any]], Optional[FakeResponse]]] = []
        self.token_payload: Dict[str, Any] = {"expires_in": 3600, "token_type": "Bearer"}
        self.token_delay = 0.0
        self._lock = threading.Lock()

    # Seeding helpers
    def add_population(self, population_id: str, name: str, default: bool = False) -> Dict[str, Any]:
        population = {"id": population_id, "name": name, "default": default}
        self.populations[population_id] = population
        return population

    def add_user(self, username: str, email: str = "", population_id: str = "", **attrs: Any) -> Dict[str, Any]:
        user_id = attrs.pop("id", None) or str(uuid.uuid4())
        user = {
            "id": user_id,
            "username": username,
            "email": email or f"{username}@example.com",
            "enabled": True,
            "population": {"id": population_id},
            **attrs,
        }
        self.users[user_id] = user
        return user

    def find_user(self, username: str) -> Optional[Dict[str, Any]]:
        for user in self.users.values():
            if user["username"].lower() == username.lower():
                return user
        return None

    def api_calls(self, method: Optional[str] = None) -> List[tuple]:
        return [c for c in self.calls if c[0] != "TOKEN" and (method is None or c[0] == method)]

    # requests.post (token endpoint)
    def post(self, url, data=None, auth=None, headers=None, timeout=None, **kwargs):
        for override in self.overrides:
            response = override("POST", url, {"data": data, "auth": auth})
            if response is not None:
                return response
        if url != TOKEN_URL:
            return FakeResponse(404, {"code": "NOT_FOUND", "message": "Environment not found"})
        with self._lock:
            self.token_requests += 1
            self.calls.append(("TOKEN", url, None, None))
        if self.token_delay:
            time.sleep(self.token_delay)
        if auth != (CLIENT_ID, CLIENT_SECRET) or (data or {}).get("grant_type") != "client_credentials":
            return FakeResponse(401, {"error": "invalid_client"})
        token = f"token-{uuid.uuid4().hex[:8]}"
        self.issued_tokens.append(token)
        return FakeResponse(200, {"access_token": token, **self.token_payload})

    # requests.request (management API)
    def request(self, method, url, json=None, params=None, headers=None, timeout=None, stream=False):
        kwargs = {"json": json, "params": params, "headers": headers}
        with self._lock:
            self.calls.append((method, url, params, json))
        for override in self.overrides:
            response = override(method, url, kwargs)
            if response is not None:
                return response

        token = (headers or {}).get("Authorization", "").replace("Bearer ", "")
        if token not in self.issued_tokens or token in self.revoked_tokens:
            return FakeResponse(401, {"code": "INVALID_TOKEN", "message": "Access token expired"})

        split = urlsplit(url)
        prefix = f"/v1/environments/{ENV_ID}"
        if not split.path.startswith(prefix):
            return FakeResponse(404, {"code": "NOT_FOUND", "message": "Environment not found"})
        path = split.path[len(prefix):]
        query = {k: v[0] for k, v in parse_qs(split.query).items()}
        query.update(params or {})

        with self._lock:
            if path == "/users" and method == "GET":
                return self._list_users(query, url)
            if path == "/users" and method == "POST":
                return self._create_user(json or {})
            match = re.fullmatch(r"/users/([^/]+)", path)
            if match:
                return self._user_item(method, match.group(1), json or {})
            if path == "/populations" and method == "GET":
                return FakeResponse(200, {"_embedded": {"populations": [
                    {**p, "userCount": self._count(p["id"])} for p in self.populations.values()
                ]}})
            match = re.fullmatch(r"/populations/([^/]+)", path)
            if match and method == "GET":
                population = self.populations.get(match.group(1))
                if population is None:
                    return FakeResponse(404, {"code": "NOT_FOUND", "message": "Population not found"})
                return FakeResponse(200, {**population, "userCount": self._count(population["id"])})
        return FakeResponse(404, {"code": "NOT_FOUND", "message": f"No route for {method} {path}"})

    def _count(self, population_id: str) -> int:
        return sum(1 for u in self.users.values() if u["population"].get("id") == population_id)

    def _matches(self, user: Dict[str, Any], scim_filter: str) -> bool:
        for attribute, value in _FILTER_TERM.findall(scim_filter or ""):
            value = value.replace('\\"', '"').replace("\\\\", "\\")
            if attribute == "population.id":
                if user["population"].get("id") != value:
                    return False
            elif str(user.get(attribute, "")).lower() != value.lower():
                return False
        return True

    def _list_users(self, query: Dict[str, Any], url: str) -> FakeResponse:
        users = [u for u in self.users.values() if self._matches(u, query.get("filter", ""))]
        limit = int(query.get("limit", 100))
        offset = int(query.get("offset", 0))
        page = users[offset:offset + limit]
        if query.get("expand") == "population":
            page = [
                {**u, "population": {
                    "id": u["population"].get("id"),
                    "name": self.populations.get(u["population"].get("id"), {}).get("name", ""),
                }}
                for u in page
            ]
        body: Dict[str, Any] = {"_embedded": {"users": [dict(u) for u in page]}, "count": len(page)}
        if offset + limit < len(users):
            next_query = {k: v for k, v in query.items() if k != "offset"}
            next_query["offset"] = offset + limit
            body["_links"] = {"next": {"href": f"{API_BASE}/environments/{ENV_ID}/users?{urlencode(next_query)}"}}
        return FakeResponse(200, body)

    def _create_user(self, payload: Dict[str, Any]) -> FakeResponse:
        username = payload.get("username", "")
        if self.find_user(username):
            return FakeResponse(400, {
                "code": "INVALID_DATA",
                "message": "The request could not be completed. One or more validation errors were in the request.",
                "details": [{"code": "UNIQUENESS_VIOLATION", "target": "username",
                             "message": "must be unique"}],
            })
        population_id = (payload.get("population") or {}).get("id")
        if population_id not in self.populations:
            return FakeResponse(400, {"code": "INVALID_DATA", "message": "Population not found"})
        user = {k: v for k, v in payload.items() if k != "password"}
        user["id"] = str(uuid.uuid4())
        self.users[user["id"]] = user
        return FakeResponse(201, dict(user))

    def _user_item(self, method: str, user_id: str, payload: Dict[str, Any]) -> FakeResponse:
        user = self.users.get(user_id)
        if user is None:
            return FakeResponse(404, {"code": "NOT_FOUND", "message": "User not found"})
        if method == "GET":
            return FakeResponse(200, dict(user))
        if method == "PATCH":
            user.update(payload)
            return FakeResponse(200, dict(user))
        if method == "DELETE":
            del self.users[user_id]
            return FakeResponse(204)
        return FakeResponse(405, {"code": "METHOD_NOT_ALLOWED", "message": method})


# ─────────────────────────────────────────────────────────────────────────────
# Network Guard Rails
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture(autouse=True)
def _block_network(monkeypatch, tmp_path):
    """Prevent unit tests from reaching the network and keep audit files in tmp."""

    def _blocked(*args, **kwargs):
        raise RuntimeError(f"Unexpected HTTP call in unit test: {args[:2]}")

    monkeypatch.setattr(requests, "get", _blocked)
    monkeypatch.setattr(requests, "post", _blocked)
    monkeypatch.setattr(requests, "request", _blocked)
    monkeypatch.setenv("AUDIT_LOG_DIR", str(tmp_path / "audit"))
    monkeypatch.setenv("AUDIT_LOG_SIGNING_KEY", "test-signing-key")


@pytest.fixture()
def pingone(monkeypatch):
    """In-memory PingOne with two populations; patched into ``requests``."""
    fake = FakePingOne()
    fake.add_population("pop-default", "Default", default=True)
    fake.add_population("pop-sales", "Sales")
    monkeypatch.setattr(requests, "post", fake.post)
    monkeypatch.setattr(requests, "request", fake.request)
    return fake


# ─────────────────────────────────────────────────────────────────────────────
# Configuration and services
# ─────────────────────────────────────────────────────────────────────────────
def make_config(tmp_path, **overrides) -> AppConfig:
    values = dict(
        demo_mode=True,
        secret_key="test-secret-key",
        pingone_client_id=CLIENT_ID,
        pingone_client_secret=CLIENT_SECRET,
        pingone_environment_id=ENV_ID,
        pingone_region="NorthAmerica",
        settings_file=str(tmp_path / "settings.json"),
        token_min_interval=0,
        batch_delay_seconds=0,
        resolution_timeout=5,
        keepalive_interval=0.05,
    )
    values.update(overrides)
    return AppConfig(**values)


@pytest.fixture()
def app_config(tmp_path) -> AppConfig:
    return make_config(tmp_path)


@pytest.fixture()
def services(app_config, pingone):
    return build_services(app_config, sleep=no_sleep)


@pytest.fixture()
def orchestrator(services):
    return services.orchestrator


# ─────────────────────────────────────────────────────────────────────────────
# Flask Test Client
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture()
def flask_app(app_config, pingone):
    flask_app = create_app(app_config, sleep=no_sleep)
    flask_app.config.update(TESTING=True)
    return flask_app


@pytest.fixture()
def client(flask_app):
    """Flask test client backed by the in-memory PingOne."""
    with flask_app.test_client() as client:
        with flask_app.app_context():
            yield client


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────
def next_event_of(channel, event_type: str, timeout: float = 5.0):
    """Consume channel events until one of ``event_type`` arrives."""
    deadline = time.monotonic() + timeout
    seen = []
    while time.monotonic() < deadline:
        event = channel.next_event(timeout=0.1)
        if event is None:
            continue
        seen.append(event.type)
        if event.type == event_type:
            return event
        if event.is_terminal:
            break
    raise AssertionError(f"No '{event_type}' event, saw {seen}")


def wait_for_state(session, state, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if session.state == state:
            return
        time.sleep(0.01)
    raise AssertionError(f"Session stayed in {session.state}, expected {state}")


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (requires running stack)"
    )
