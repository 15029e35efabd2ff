"""Flask application factory and bootstrap.

This module provides the create_app() factory function for initializing
the Flask application with its blueprints, middleware and the PingOne
bulk services (token provider, gateway, request queues, orchestrator).
"""
from __future__ import annotations
import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from flask import Flask
from werkzeug.middleware.proxy_fix import ProxyFix

from app.config import AppConfig, SettingsStore, load_settings
from app.core.bulk.channel import ChannelRegistry
from app.core.bulk.orchestrator import BulkOrchestrator
from app.core.bulk.session import SessionRegistry
from app.core.pingone.client import PingOneClient
from app.core.pingone.tokens import TokenProvider
from app.core.request_queue import RequestQueue

EXTENSION_KEY = "pingone_bulk"


@dataclass
class BulkServices:
    """Per-application service graph, reachable from routes via ``get_services()``."""
    config: AppConfig
    store: SettingsStore
    tokens: TokenProvider
    client: PingOneClient
    queues: Dict[str, RequestQueue]
    sessions: SessionRegistry
    channels: ChannelRegistry
    orchestrator: BulkOrchestrator


def build_services(cfg: AppConfig, sleep: Callable[[float], None] = time.sleep) -> BulkServices:
    """Wire the token provider, gateway, queues and orchestrator together."""
    store = SettingsStore(cfg.settings_file, cfg.settings_encryption_key)
    tokens = TokenProvider(cfg, store, sleep=sleep)
    client = PingOneClient(tokens, timeout=cfg.request_timeout, max_retries=cfg.max_retries, sleep=sleep)
    queues = {
        "export": RequestQueue("export", cfg.export_queue_concurrency, cfg.export_queue_size),
        "import": RequestQueue("import", cfg.import_queue_concurrency, cfg.import_queue_size),
        "api": RequestQueue("api", cfg.api_queue_concurrency, cfg.api_queue_size),
    }
    sessions = SessionRegistry()
    channels = ChannelRegistry()
    orchestrator = BulkOrchestrator(
        client,
        cfg,
        sessions,
        channels,
        import_queue=queues["import"],
        api_queue=queues["api"],
        export_queue=queues["export"],
        store=store,
        sleep=sleep,
    )
    return BulkServices(cfg, store, tokens, client, queues, sessions, channels, orchestrator)


# ─────────────────────────────────────────────────────────────────────────────
# Application Factory
# ─────────────────────────────────────────────────────────────────────────────
def create_app(cfg: Optional[AppConfig] = None, sleep: Callable[[float], None] = time.sleep) -> Flask:
    """Create and configure Flask application."""
    # Load configuration
    cfg = cfg or load_settings()

    # Create Flask app
    app = Flask(__name__)

    # Store config for easy access in routes
    app.config["APP_CONFIG"] = cfg
    app.config["SECRET_KEY"] = cfg.secret_key
    app.config["MAX_CONTENT_LENGTH"] = int(os.environ.get("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

    # Trust X-Forwarded-* headers from proxy (nginx)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)  # type: ignore

    # No-op when the host (gunicorn, pytest) already configured logging
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    app.extensions[EXTENSION_KEY] = build_services(cfg, sleep=sleep)

    # Register blueprints
    from app.api import bulk, errors, health
    from app.api import settings as settings_routes

    app.register_blueprint(health.bp)
    app.register_blueprint(bulk.bp)
    app.register_blueprint(settings_routes.bp)

    # Register error handlers
    errors.register_error_handlers(app)

    # Log startup info
    mode_label = "DEMO" if cfg.demo_mode else "PRODUCTION"
    print(f"[flask_app] Mode={mode_label}")
    print(
        f"[flask_app] Batches of {cfg.batch_size} every {cfg.batch_delay_seconds:g}s; "
        f"queues export={cfg.export_queue_concurrency}/{cfg.export_queue_size} "
        f"import={cfg.import_queue_concurrency}/{cfg.import_queue_size} "
        f"api={cfg.api_queue_concurrency}/{cfg.api_queue_size}"
    )

    if cfg.demo_mode:
        print("[flask_app] WARNING: Demo mode active - do not deploy with demo credentials")

    return app


def get_services(app: Flask) -> BulkServices:
    return app.extensions[EXTENSION_KEY]


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=4000, debug=True, threaded=True)
