"""PingOne-specific exceptions and the friendly-message taxonomy."""
from __future__ import annotations
from typing import Any, Optional


class PingOneError(Exception):
    """Base exception for all PingOne operations.

    Attributes:
        status_code: HTTP status the local API answers with
        message: Human-readable message safe to show in the browser
    """

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class CredentialsMissingError(PingOneError):
    """Client id, client secret or environment id could not be resolved."""

    status_code = 400


class InvalidRegionError(PingOneError):
    """Configured region has no known API base URL."""

    status_code = 400


class RemoteAPIError(PingOneError):
    """Non-2xx response from PingOne.

    Attributes:
        status_code: HTTP status returned by PingOne
        message: Friendly message derived from the status code
        endpoint: API endpoint that failed
        body: Parsed error body (dict) or raw text
    """

    def __init__(
        self,
        status_code: int,
        message: str,
        endpoint: str = "",
        body: Any = None,
    ):
        self.endpoint = endpoint
        self.body = body
        super().__init__(message, status_code)

    @property
    def remote_message(self) -> str:
        """Message PingOne itself returned, if any."""
        if isinstance(self.body, dict):
            return str(self.body.get("message") or "")
        return str(self.body or "")


class AuthenticationError(RemoteAPIError):
    """401 from PingOne or its token endpoint."""


class PermissionDeniedError(RemoteAPIError):
    """403 from PingOne."""


class NotFoundError(RemoteAPIError):
    """404 from PingOne."""


class RateLimitedError(RemoteAPIError):
    """429 from PingOne, or the local token request interval was violated."""

    def __init__(self, message: str, endpoint: str = "", body: Any = None, retry_after: float = 1.0):
        self.retry_after = retry_after
        super().__init__(429, message, endpoint, body)


class UpstreamServerError(RemoteAPIError):
    """5xx from PingOne."""


class GatewayTimeoutError(PingOneError):
    """Outbound call exceeded the request timeout."""

    status_code = 504


class UniquenessConflictError(RemoteAPIError):
    """PingOne rejected a create because the user already exists."""

    def __init__(self, message: str, endpoint: str = "", body: Any = None, target: str = "username"):
        self.target = target
        super().__init__(409, message, endpoint, body)


# ─────────────────────────────────────────────────────────────────────────────
# Friendly messages
# ─────────────────────────────────────────────────────────────────────────────
TOKEN_MESSAGES = {
    400: "Invalid Request: The PingOne Environment ID appears to be incorrect or malformed. "
         "Please verify your Environment ID.",
    401: "Authentication Failed: Your PingOne Client ID or Client Secret is incorrect. "
         "Please check your credentials in the settings.",
    403: "Access Denied: Your PingOne application may not have the required permissions. "
         "Please check your application configuration.",
    404: "Environment Not Found: The PingOne Environment ID appears to be incorrect. "
         "Please verify your Environment ID.",
    429: "Rate Limited: Too many authentication requests. Please wait a moment before trying again.",
    500: "Server Error: PingOne authentication service is experiencing issues. Please try again later.",
}

API_MESSAGES = {
    400: "Bad Request: There was an issue with your request. Please check the data you're trying to send.",
    401: "Authentication Required: Your API credentials are invalid or expired. "
         "Please check your PingOne Client ID and Secret.",
    403: "Access Denied: You don't have permission to access this resource. "
         "Please check your PingOne configuration and permissions.",
    404: "Not Found: The requested resource was not found. Please check your Environment ID and endpoint.",
    429: "Rate Limited: Too many requests. Please wait a moment before trying again.",
    500: "Server Error: PingOne is experiencing technical difficulties. Please try again later.",
}

# Overrides per semantic area; anything missing falls back to API_MESSAGES
AREA_MESSAGES = {
    "import": {
        400: "Import Rejected: PingOne refused the user data. Check required columns and value formats.",
        403: "Access Denied: Your PingOne application is not allowed to create users in this environment.",
        404: "Import Target Not Found: The environment or population for this import does not exist.",
    },
    "user": {
        400: "Invalid User Data: PingOne rejected the user update. Check the values in your CSV.",
        403: "Access Denied: Your PingOne application is not allowed to modify or delete users.",
        404: "User Not Found: The user no longer exists in PingOne.",
    },
    "population": {
        400: "Invalid Population: The population ID is malformed.",
        403: "Access Denied: Your PingOne application is not allowed to read populations.",
        404: "Population Not Found: The population does not exist in this environment.",
    },
}


def _bucket(status_code: int) -> Optional[int]:
    if status_code >= 500:
        return 500
    return status_code


def token_error_message(status_code: int) -> str:
    """Friendly message for a failed token request."""
    message = TOKEN_MESSAGES.get(_bucket(status_code))
    if message:
        return message
    return f"Authentication Error: Failed to authenticate with PingOne ({status_code})"


def api_error_message(status_code: int, area: str = "generic", remote_message: str = "") -> str:
    """Friendly message for a failed API call, specialised by semantic area."""
    bucket = _bucket(status_code)
    message = AREA_MESSAGES.get(area, {}).get(bucket) or API_MESSAGES.get(bucket)
    if message:
        return message
    return f"PingOne API request failed with status {status_code}: {remote_message or 'Unknown error'}"


def error_for_status(
    status_code: int,
    message: str,
    endpoint: str = "",
    body: Any = None,
) -> RemoteAPIError:
    """Build the typed exception matching an HTTP status."""
    if status_code == 401:
        return AuthenticationError(status_code, message, endpoint, body)
    if status_code == 403:
        return PermissionDeniedError(status_code, message, endpoint, body)
    if status_code == 404:
        return NotFoundError(status_code, message, endpoint, body)
    if status_code == 429:
        return RateLimitedError(message, endpoint, body)
    if status_code >= 500:
        return UpstreamServerError(status_code, message, endpoint, body)
    return RemoteAPIError(status_code, message, endpoint, body)
