"""Health check endpoints."""
from flask import Blueprint, current_app, jsonify

bp = Blueprint("health", __name__)


@bp.route("/health")
def health_check():
    """Basic health check endpoint."""
    return ("ok", 200, {"Content-Type": "text/plain"})


@bp.route("/ready")
def readiness_check():
    """Readiness check endpoint (can be extended with dependency checks)."""
    return ("ready", 200, {"Content-Type": "text/plain"})


@bp.route("/api/queue/status")
def queue_status():
    """Occupancy of the export/import/api request queues."""
    from app.flask_app import get_services

    services = get_services(current_app)
    return jsonify({
        "queues": {name: queue.stats() for name, queue in services.queues.items()},
        "activeSessions": len(services.sessions.active()),
    })
