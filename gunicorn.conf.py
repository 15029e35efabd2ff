"""Gunicorn configuration for the bulk user administration backend.

Progress streams hold a worker thread for the whole life of a bulk job, so
workers use the threaded (gthread) class with a generous timeout. Session
state and request queues live in process memory: run a single worker and
scale with threads.

Secrets are read by app.config.settings from /run/secrets (Docker secrets)
with environment variables as fallback.
"""
import os
from pathlib import Path

wsgi_app = "app.flask_app:create_app()"
bind = os.environ.get("GUNICORN_BIND", "0.0.0.0:4000")
workers = 1
worker_class = "gthread"
threads = int(os.environ.get("GUNICORN_THREADS", "32"))
# SSE responses stay open until the job ends
timeout = int(os.environ.get("GUNICORN_TIMEOUT", "3600"))
graceful_timeout = 30
keepalive = 75
accesslog = "-"
errorlog = "-"
loglevel = os.environ.get("LOG_LEVEL", "info").lower()


def post_fork(server, worker):
    """Report where secrets will come from once the worker has forked."""
    secrets_dir = Path("/run/secrets")
    if secrets_dir.exists() and secrets_dir.is_dir():
        secret_files = list(secrets_dir.glob("*"))
        if secret_files:
            worker.log.info(f"Found {len(secret_files)} secrets in /run/secrets")
            return
    worker.log.info("No /run/secrets mount, using environment variables for secrets")

    if os.environ.get("DEMO_MODE", "false").lower() == "true":
        worker.log.warning("DEMO_MODE=true - demo credentials in use, do not expose publicly")
