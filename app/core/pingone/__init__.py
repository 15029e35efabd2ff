"""PingOne Management API integration package.

Provides the token provider, the HTTP gateway and typed resource services:
- TokenProvider: client-credentials tokens with caching and single-flight refresh
- PingOneClient: authenticated requests, error normalisation and retries
- UserService / PopulationService: typed operations on top of the client
"""
from .client import PingOneClient
from .exceptions import (
    AuthenticationError,
    CredentialsMissingError,
    GatewayTimeoutError,
    InvalidRegionError,
    NotFoundError,
    PermissionDeniedError,
    PingOneError,
    RateLimitedError,
    RemoteAPIError,
    UniquenessConflictError,
    UpstreamServerError,
)
from .populations import PopulationService
from .tokens import AccessToken, Credentials, TokenProvider
from .users import UserService

__all__ = [
    "PingOneClient",
    "TokenProvider",
    "AccessToken",
    "Credentials",
    "UserService",
    "PopulationService",
    "PingOneError",
    "CredentialsMissingError",
    "InvalidRegionError",
    "RemoteAPIError",
    "AuthenticationError",
    "PermissionDeniedError",
    "NotFoundError",
    "RateLimitedError",
    "UpstreamServerError",
    "GatewayTimeoutError",
    "UniquenessConflictError",
]
