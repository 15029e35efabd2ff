"""Low-level HTTP gateway to the PingOne Management API.

Handles token injection, region resolution, error normalisation and retries.
"""
from __future__ import annotations
import logging
import time
from typing import Any, Callable, Dict, Optional

import requests

from app.core.backoff import Backoff

from .exceptions import (
    AuthenticationError,
    GatewayTimeoutError,
    RateLimitedError,
    RemoteAPIError,
    UniquenessConflictError,
    UpstreamServerError,
    api_error_message,
    error_for_status,
)
from .regions import api_base_url
from .tokens import Credentials, TokenProvider

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30


def _parse_body(resp: requests.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text


def _uniqueness_target(body: Any) -> Optional[str]:
    """Return the conflicting attribute when PingOne reports a uniqueness violation."""
    if not isinstance(body, dict):
        return None
    for detail in body.get("details") or []:
        if isinstance(detail, dict) and detail.get("code") == "UNIQUENESS_VIOLATION":
            return detail.get("target") or "username"
    return None


def _retry_after(resp: requests.Response) -> float:
    raw = resp.headers.get("Retry-After", "") if resp.headers else ""
    try:
        return max(0.0, float(raw))
    except ValueError:
        return 1.0


class PingOneClient:
    """HTTP client for the PingOne Management API.

    Usage:
        client = PingOneClient(TokenProvider(config, store))
        users = client.call("GET", "/users", params={"limit": 100})
    """

    def __init__(
        self,
        tokens: TokenProvider,
        timeout: float = REQUEST_TIMEOUT,
        max_retries: int = 3,
        backoff: Optional[Backoff] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.tokens = tokens
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff = backoff or Backoff()
        self._sleep = sleep

    def url_for(self, path: str, credentials: Credentials) -> str:
        """Build the absolute URL for ``path``.

        Absolute URLs (``_links.next`` hrefs) pass through untouched. Paths
        that do not start with ``/environments`` are scoped to the configured
        environment.
        """
        if path.startswith("https://") or path.startswith("http://"):
            return path
        if not path.startswith("/"):
            path = f"/{path}"
        if path != "/environments" and not path.startswith("/environments/"):
            path = f"/environments/{credentials.environment_id}{path}"
        return f"{api_base_url(credentials.region)}{path}"

    def call(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        stream: bool = False,
        area: str = "generic",
    ) -> Any:
        """Execute an authenticated request.

        Args:
            method: HTTP verb
            path: API path relative to ``/v1`` (environment-scoped unless it
                starts with ``/environments``) or an absolute URL
            json: JSON payload
            params: Query parameters
            stream: Return the raw ``requests.Response`` for binary pass-through
            area: Semantic area used to specialise error messages
                (``import``, ``user``, ``population`` or ``generic``)

        Returns:
            Parsed JSON, response text, None for empty bodies, or the raw
            response when ``stream`` is set.

        Raises:
            InvalidRegionError: Before any network call if the region is unknown.
            RemoteAPIError: Typed by status on non-2xx responses.
            GatewayTimeoutError: If every attempt timed out.
        """
        url = self.url_for(path, self.tokens.resolve_credentials())
        attempt = 0
        token_refreshed = False
        while True:
            try:
                return self._send(method, url, json, params, stream, area)
            except AuthenticationError:
                if token_refreshed:
                    raise
                token_refreshed = True
                logger.warning("PingOne rejected the access token for %s %s, refreshing once", method, path)
                self.tokens.clear()
            except (GatewayTimeoutError, UpstreamServerError, RateLimitedError) as exc:
                attempt += 1
                if attempt >= self.max_retries:
                    raise
                delay = self.backoff.delay(attempt - 1)
                if isinstance(exc, RateLimitedError):
                    delay = max(delay, exc.retry_after)
                logger.warning(
                    "%s %s failed (%s), retry %d/%d in %.1fs",
                    method, path, exc.status_code, attempt, self.max_retries - 1, delay,
                )
                self._sleep(delay)

    def _send(
        self,
        method: str,
        url: str,
        json: Optional[Dict[str, Any]],
        params: Optional[Dict[str, Any]],
        stream: bool,
        area: str,
    ) -> Any:
        token = self.tokens.get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        try:
            resp = requests.request(
                method,
                url,
                json=json,
                params=params,
                headers=headers,
                timeout=self.timeout,
                stream=stream,
            )
        except requests.Timeout:
            raise GatewayTimeoutError(f"PingOne did not answer within {self.timeout:g}s ({method} {url})")
        except requests.RequestException as exc:
            raise UpstreamServerError(502, f"Unable to reach PingOne: {exc}", url)

        if resp.status_code >= 400:
            raise self._error_from_response(resp, url, area)
        if stream:
            return resp
        if resp.status_code == 204 or not resp.content:
            return None
        content_type = resp.headers.get("Content-Type", "")
        if "json" in content_type:
            return resp.json()
        return resp.text

    def _error_from_response(self, resp: requests.Response, url: str, area: str) -> RemoteAPIError:
        """Map a non-2xx response onto the typed exception hierarchy."""
        body = _parse_body(resp)
        if resp.status_code in (400, 409):
            target = _uniqueness_target(body)
            if target:
                return UniquenessConflictError(
                    f"A user with this {target} already exists in PingOne.", url, body, target
                )
        remote = body.get("message", "") if isinstance(body, dict) else str(body or "")
        logger.error("PingOne API error: status=%s url=%s message=%s", resp.status_code, url, remote)
        error = error_for_status(
            resp.status_code,
            api_error_message(resp.status_code, area, remote),
            url,
            body,
        )
        if isinstance(error, RateLimitedError):
            error.retry_after = _retry_after(resp)
        return error
