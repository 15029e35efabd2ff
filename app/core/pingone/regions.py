"""PingOne region to domain mapping."""
from __future__ import annotations

from .exceptions import InvalidRegionError

REGION_DOMAINS = {
    "northamerica": "com",
    "na": "com",
    "us": "com",
    "europe": "eu",
    "eu": "eu",
    "canada": "ca",
    "ca": "ca",
    "asia": "asia",
    "ap": "asia",
    "asiapacific": "asia",
    "australia": "com.au",
    "au": "com.au",
}


def region_domain(region: str) -> str:
    """Return the top-level domain suffix for ``region``.

    Raises:
        InvalidRegionError: If the region is empty or unknown.
    """
    key = (region or "").replace(" ", "").replace("_", "").replace("-", "").lower()
    domain = REGION_DOMAINS.get(key)
    if not domain:
        raise InvalidRegionError(
            f"Unknown PingOne region '{region}'. "
            "Expected one of NorthAmerica, Europe, Canada, Asia, Australia."
        )
    return domain


def api_base_url(region: str) -> str:
    return f"https://api.pingone.{region_domain(region)}/v1"


def auth_token_url(region: str, environment_id: str) -> str:
    return f"https://auth.pingone.{region_domain(region)}/{environment_id}/as/token"
