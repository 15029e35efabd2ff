"""Client-credentials token acquisition and caching for the PingOne worker app.

One ``TokenProvider`` is created per application and injected into the
gateway and the bulk orchestrator. It owns the cached token and makes sure
only one refresh is in flight: concurrent callers wait for that refresh and
receive the same token or the same error.
"""
from __future__ import annotations
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import jwt
import requests

from app.config.settings import AppConfig
from app.config.store import SettingsStore
from app.core.backoff import Backoff

from .exceptions import (
    CredentialsMissingError,
    GatewayTimeoutError,
    PingOneError,
    RateLimitedError,
    UpstreamServerError,
    error_for_status,
    token_error_message,
)
from .regions import auth_token_url, region_domain

logger = logging.getLogger(__name__)

DEFAULT_REGION = "NorthAmerica"
FALLBACK_LIFETIME = 3600


def _mask(value: str) -> str:
    return f"***{value[-4:]}" if value else "missing"


@dataclass(frozen=True)
class Credentials:
    """Resolved worker application credentials."""
    client_id: str
    client_secret: str
    environment_id: str
    region: str = DEFAULT_REGION

    def __repr__(self) -> str:
        return (
            f"Credentials(client_id={_mask(self.client_id)!r}, "
            f"environment_id={_mask(self.environment_id)!r}, region={self.region!r})"
        )


@dataclass
class AccessToken:
    access_token: str
    expires_at: float
    token_type: str = "Bearer"

    def is_valid(self, now: float, buffer: float) -> bool:
        return now < self.expires_at - buffer


class _Refresh:
    """Outcome of one in-flight token request, shared with waiting callers."""

    def __init__(self) -> None:
        self.done = False
        self.error: Optional[BaseException] = None


class TokenProvider:
    """Fetch, cache and renew PingOne access tokens."""

    def __init__(
        self,
        config: AppConfig,
        store: Optional[SettingsStore] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        backoff: Optional[Backoff] = None,
    ):
        self.config = config
        self.store = store
        self._clock = clock
        self._sleep = sleep
        self._backoff = backoff or Backoff()
        self._token: Optional[AccessToken] = None
        self._refresh: Optional[_Refresh] = None
        self._last_request: Optional[float] = None
        self._last_refresh: Optional[float] = None
        self._cond = threading.Condition()

    # ─────────────────────────────────────────────────────────────────────
    # Credentials
    # ─────────────────────────────────────────────────────────────────────
    def resolve_credentials(self, custom_credentials: Optional[Dict[str, Any]] = None) -> Credentials:
        """Resolve credentials from an explicit override, else config then settings store.

        Each source is consulted per value and honoured only when non-empty.

        Raises:
            CredentialsMissingError: If client id, secret or environment id is missing.
            InvalidRegionError: If the resolved region is unknown.
        """
        if custom_credentials:
            client_id = custom_credentials.get("apiClientId") or custom_credentials.get("clientId") or ""
            client_secret = custom_credentials.get("apiSecret") or custom_credentials.get("clientSecret") or ""
            environment_id = custom_credentials.get("environmentId") or ""
            region = custom_credentials.get("region") or DEFAULT_REGION
        else:
            client_id = self.config.pingone_client_id or self._stored("apiClientId")
            client_secret = self.config.pingone_client_secret or self._stored("apiSecret")
            environment_id = self.config.pingone_environment_id or self._stored("environmentId")
            region = self.config.pingone_region or self._stored("region") or DEFAULT_REGION

        missing = [
            name
            for name, value in (
                ("client id", client_id),
                ("client secret", client_secret),
                ("environment id", environment_id),
            )
            if not value
        ]
        if missing:
            raise CredentialsMissingError(
                "PingOne API credentials are not properly configured "
                f"(missing {', '.join(missing)}). Please check your settings."
            )

        region_domain(region)
        return Credentials(client_id, client_secret, environment_id, region)

    def _stored(self, name: str) -> str:
        if self.store is None:
            return ""
        return self.store.get(name) or ""

    # ─────────────────────────────────────────────────────────────────────
    # Tokens
    # ─────────────────────────────────────────────────────────────────────
    def get_access_token(self, custom_credentials: Optional[Dict[str, Any]] = None) -> str:
        """Return a bearer token usable for at least the safety buffer.

        Tokens for ``custom_credentials`` are fetched fresh and never cached.

        Raises:
            CredentialsMissingError: Credentials could not be resolved.
            RateLimitedError: Token requests came too fast and no token is cached.
            RemoteAPIError: Token endpoint rejected the request (friendly message).
        """
        if custom_credentials:
            return self.request_token(custom_credentials).access_token

        with self._cond:
            while True:
                if self._token and self._token.is_valid(self._clock(), self.config.token_expiry_buffer):
                    return self._token.access_token
                if self._refresh is None:
                    break
                refresh = self._refresh
                logger.debug("Token refresh in progress, waiting")
                self._cond.wait_for(lambda: refresh.done)
                if refresh.error is not None:
                    raise refresh.error

            if not self._request_allowed():
                if self._token:
                    logger.warning("Token request rate limited, using cached token")
                    return self._token.access_token
                raise self._rate_limited()
            self._last_request = self._clock()
            refresh = _Refresh()
            self._refresh = refresh

        try:
            token = self._request_token(self.resolve_credentials())
        except Exception as exc:
            with self._cond:
                refresh.error = exc
                refresh.done = True
                self._refresh = None
                self._cond.notify_all()
            raise

        with self._cond:
            self._token = token
            self._last_refresh = self._clock()
            refresh.done = True
            self._refresh = None
            self._cond.notify_all()
        return token.access_token

    def request_token(self, custom_credentials: Dict[str, Any]) -> AccessToken:
        """Fetch an uncached token for explicit credentials (settings "test connection")."""
        credentials = self.resolve_credentials(custom_credentials)
        with self._cond:
            if not self._request_allowed():
                raise self._rate_limited()
            self._last_request = self._clock()
        return self._request_token(credentials)

    def _request_allowed(self) -> bool:
        if self._last_request is None:
            return True
        return self._clock() - self._last_request >= self.config.token_min_interval

    def _rate_limited(self) -> RateLimitedError:
        elapsed = self._clock() - (self._last_request or 0.0)
        wait = max(0.0, self.config.token_min_interval - elapsed)
        return RateLimitedError(token_error_message(429), retry_after=wait)

    def _request_token(self, credentials: Credentials) -> AccessToken:
        """POST to the token endpoint, retrying timeouts and upstream outages."""
        url = auth_token_url(credentials.region, credentials.environment_id)
        logger.info(
            "Requesting PingOne token: client_id=%s environment=%s region=%s",
            _mask(credentials.client_id),
            _mask(credentials.environment_id),
            credentials.region,
        )
        attempt = 0
        while True:
            try:
                return self._post_token(url, credentials)
            except (GatewayTimeoutError, UpstreamServerError) as exc:
                attempt += 1
                if attempt >= self.config.max_retries:
                    raise
                delay = self._backoff.delay(attempt - 1)
                logger.warning("Token request failed (%s), retrying in %.1fs", exc.message, delay)
                self._sleep(delay)

    def _post_token(self, url: str, credentials: Credentials) -> AccessToken:
        try:
            resp = requests.post(
                url,
                data={"grant_type": "client_credentials"},
                auth=(credentials.client_id, credentials.client_secret),
                headers={"Accept": "application/json"},
                timeout=self.config.request_timeout,
            )
        except requests.Timeout:
            raise GatewayTimeoutError("Timed out waiting for the PingOne authentication service")
        except requests.RequestException as exc:
            raise UpstreamServerError(502, f"Unable to reach the PingOne authentication service: {exc}", url)

        if resp.status_code >= 400:
            try:
                body: Any = resp.json()
            except ValueError:
                body = resp.text
            logger.error("Token request failed: status=%s body=%s", resp.status_code, body)
            raise error_for_status(resp.status_code, token_error_message(resp.status_code), url, body)

        data = resp.json()
        access_token = data.get("access_token")
        if not access_token:
            raise PingOneError("PingOne token response did not contain an access token", 502)

        lifetime = min(self._lifetime(data, access_token), self.config.token_lifetime_cap)
        minutes = int(lifetime // 60)
        logger.info("New token obtained, expires in %d minutes", minutes)
        if minutes < 10:
            logger.warning("Token has short expiration time: %d minutes", minutes)
        return AccessToken(
            access_token=access_token,
            expires_at=self._clock() + lifetime,
            token_type=data.get("token_type") or "Bearer",
        )

    def _lifetime(self, data: Dict[str, Any], access_token: str) -> float:
        expires_in = data.get("expires_in")
        if expires_in is not None:
            return float(expires_in)
        try:
            claims = jwt.decode(access_token, options={"verify_signature": False})
        except jwt.PyJWTError:
            return float(FALLBACK_LIFETIME)
        exp = claims.get("exp")
        if not exp:
            return float(FALLBACK_LIFETIME)
        return max(0.0, float(exp) - self._clock())

    # ─────────────────────────────────────────────────────────────────────
    # Introspection
    # ─────────────────────────────────────────────────────────────────────
    def token_info(self) -> Optional[Dict[str, Any]]:
        """Expiry details of the cached token, or None when nothing is cached."""
        with self._cond:
            token = self._token
            last_refresh = self._last_refresh
        if token is None:
            return None
        now = self._clock()
        return {
            "tokenType": token.token_type,
            "expiresIn": max(0, int(token.expires_at - now)),
            "expiresAt": token.expires_at,
            "lastRefresh": last_refresh,
            "isValid": token.is_valid(now, self.config.token_expiry_buffer),
        }

    def clear(self) -> None:
        """Forget the cached token so the next call fetches a new one."""
        with self._cond:
            self._token = None
