"""Settings loader with environment variable and Docker secrets integration."""
from __future__ import annotations
import os
import secrets
from dataclasses import dataclass
from pathlib import Path


def _load_secret_from_file(secret_name: str, env_var: str | None = None) -> str | None:
    """
    Load secret from /run/secrets (Docker secrets pattern).

    Priority:
    1. /run/secrets/{secret_name} (Docker secrets mount)
    2. Environment variable (fallback)

    Args:
        secret_name: Name of the secret file in /run/secrets
        env_var: Optional environment variable name to check as fallback

    Returns:
        Secret value or None if not found
    """
    secret_file = Path("/run/secrets") / secret_name

    # Priority 1: Read from /run/secrets
    if secret_file.exists() and secret_file.is_file():
        try:
            secret_value = secret_file.read_text().strip()
            if secret_value:
                print(f"[settings] ✓ Loaded {secret_name} from /run/secrets")
                return secret_value
        except OSError as e:
            print(f"[settings] ✗ Failed to read /run/secrets/{secret_name}: {e}")

    # Priority 2: Fallback to environment variable
    if env_var:
        secret_value = os.getenv(env_var)
        if secret_value:
            return secret_value

    return None


@dataclass
class AppConfig:
    """Application configuration container."""
    # Mode
    demo_mode: bool

    # Flask
    secret_key: str

    # PingOne worker application (client credentials grant)
    pingone_client_id: str = ""
    pingone_client_secret: str = ""
    pingone_environment_id: str = ""
    pingone_region: str = ""

    # File-backed settings store edited from the UI
    settings_file: str = "data/settings.json"
    settings_encryption_key: str = ""

    # Gateway
    request_timeout: float = 30.0
    max_retries: int = 3

    # Token provider
    token_min_interval: float = 0.2
    token_lifetime_cap: int = 55 * 60
    token_expiry_buffer: int = 120

    # Bulk jobs
    batch_size: int = 5
    batch_delay_seconds: float = 1.0
    resolution_timeout: float = 900.0
    invalid_population_fallback: str = "affected"
    max_failed_batches: int = 3

    # Progress channel
    keepalive_interval: float = 25.0

    # Request queues (max concurrent, max pending)
    export_queue_concurrency: int = 3
    export_queue_size: int = 50
    import_queue_concurrency: int = 2
    import_queue_size: int = 30
    api_queue_concurrency: int = 10
    api_queue_size: int = 100

    # Audit
    audit_log_signing_key: str = ""

    @property
    def has_pingone_credentials(self) -> bool:
        """True when process-level configuration alone can authenticate."""
        return bool(self.pingone_client_id and self.pingone_client_secret and self.pingone_environment_id)


def _env_int(var_name: str, default: int) -> int:
    raw = os.environ.get(var_name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable {var_name} must be an integer, got {raw!r}")


def _env_float(var_name: str, default: float) -> float:
    raw = os.environ.get(var_name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable {var_name} must be a number, got {raw!r}")


def load_settings() -> AppConfig:
    """Load application settings from environment and /run/secrets."""
    demo_mode = os.environ.get("DEMO_MODE", "false").lower() == "true"

    # Flask secret key
    secret_key = _load_secret_from_file("flask_secret_key", "FLASK_SECRET_KEY")
    if not secret_key:
        if demo_mode:
            secret_key = secrets.token_urlsafe(48)
            os.environ["FLASK_SECRET_KEY"] = secret_key
            print("[demo-mode] Generated temporary FLASK_SECRET_KEY")
        else:
            raise RuntimeError("FLASK_SECRET_KEY not found in /run/secrets or environment")

    # PingOne credentials are optional here: the settings store may supply them later
    pingone_client_secret = _load_secret_from_file("pingone_client_secret", "PINGONE_CLIENT_SECRET") or ""
    pingone_client_id = os.environ.get("PINGONE_CLIENT_ID", "").strip()
    pingone_environment_id = os.environ.get("PINGONE_ENVIRONMENT_ID", "").strip()
    pingone_region = os.environ.get("PINGONE_REGION", "").strip()

    settings_encryption_key = _load_secret_from_file("pingone_settings_key", "PINGONE_SETTINGS_KEY") or ""

    audit_log_signing_key = _load_secret_from_file("audit_log_signing_key", "AUDIT_LOG_SIGNING_KEY")
    if audit_log_signing_key:
        os.environ["AUDIT_LOG_SIGNING_KEY"] = audit_log_signing_key
    elif demo_mode:
        demo_key = os.environ.get("AUDIT_LOG_SIGNING_KEY_DEMO", "demo-audit-signing-key-change-in-production")
        os.environ["AUDIT_LOG_SIGNING_KEY"] = demo_key
        audit_log_signing_key = demo_key
        print(f"[demo-mode] Using demo AUDIT_LOG_SIGNING_KEY: {demo_key[:20]}...")

    invalid_population_fallback = os.environ.get("INVALID_POPULATION_FALLBACK", "affected").strip().lower()
    if invalid_population_fallback not in {"affected", "all"}:
        raise RuntimeError("INVALID_POPULATION_FALLBACK must be 'affected' or 'all'")

    cfg = AppConfig(
        demo_mode=demo_mode,
        secret_key=secret_key,
        pingone_client_id=pingone_client_id,
        pingone_client_secret=pingone_client_secret,
        pingone_environment_id=pingone_environment_id,
        pingone_region=pingone_region,
        settings_file=os.environ.get("PINGONE_SETTINGS_FILE", "data/settings.json"),
        settings_encryption_key=settings_encryption_key,
        request_timeout=_env_float("PINGONE_REQUEST_TIMEOUT", 30.0),
        max_retries=_env_int("PINGONE_MAX_RETRIES", 3),
        token_min_interval=_env_float("TOKEN_MIN_INTERVAL", 0.2),
        token_lifetime_cap=_env_int("TOKEN_LIFETIME_CAP", 55 * 60),
        token_expiry_buffer=_env_int("TOKEN_EXPIRY_BUFFER", 120),
        batch_size=_env_int("BULK_BATCH_SIZE", 5),
        batch_delay_seconds=_env_float("BULK_BATCH_DELAY", 1.0),
        resolution_timeout=_env_float("BULK_RESOLUTION_TIMEOUT", 900.0),
        invalid_population_fallback=invalid_population_fallback,
        max_failed_batches=_env_int("BULK_MAX_FAILED_BATCHES", 3),
        keepalive_interval=_env_float("PROGRESS_KEEPALIVE_INTERVAL", 25.0),
        export_queue_concurrency=_env_int("EXPORT_QUEUE_CONCURRENCY", 3),
        export_queue_size=_env_int("EXPORT_QUEUE_SIZE", 50),
        import_queue_concurrency=_env_int("IMPORT_QUEUE_CONCURRENCY", 2),
        import_queue_size=_env_int("IMPORT_QUEUE_SIZE", 30),
        api_queue_concurrency=_env_int("API_QUEUE_CONCURRENCY", 10),
        api_queue_size=_env_int("API_QUEUE_SIZE", 100),
        audit_log_signing_key=audit_log_signing_key or "",
    )

    mode_label = "DEMO" if demo_mode else "PRODUCTION"
    env_preview = f"***{pingone_environment_id[-4:]}" if pingone_environment_id else "from settings store"
    region_label = pingone_region or "from settings store"
    print(f"[settings] Mode={mode_label}; region={region_label}; environment={env_preview}")

    if demo_mode:
        print("[settings] WARNING: Demo credentials in use. Do not deploy with these defaults.")

    return cfg
