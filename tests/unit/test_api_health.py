"""Tests for health check endpoints."""
import pytest
from flask import Flask

from app.api.health import bp as health_bp


@pytest.fixture()
def bare_client():
    app = Flask(__name__)
    app.register_blueprint(health_bp)
    with app.test_client() as client:
        yield client


def test_health_check(bare_client):
    """Test basic health check endpoint."""
    response = bare_client.get("/health")
    assert response.status_code == 200
    assert response.data == b"ok"
    assert response.content_type.startswith("text/plain")


def test_readiness_check(bare_client):
    response = bare_client.get("/ready")
    assert response.status_code == 200
    assert response.data == b"ready"
    assert response.content_type.startswith("text/plain")


def test_queue_status_lists_all_queues(client):
    response = client.get("/api/queue/status")
    assert response.status_code == 200
    data = response.get_json()
    assert set(data["queues"]) == {"export", "import", "api"}
    assert data["queues"]["import"]["maxConcurrent"] == 2
    assert data["queues"]["api"]["maxQueueSize"] == 100
    assert data["activeSessions"] == 0
