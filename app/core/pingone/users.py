"""PingOne user management operations."""
from __future__ import annotations
from typing import Any, Dict, Iterator, Optional, Tuple

from .client import PingOneClient

PAGE_SIZE = 100


def _embedded_users(payload: Any) -> list:
    if not isinstance(payload, dict):
        return []
    return (payload.get("_embedded") or {}).get("users") or []


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


class UserService:
    """Service for managing PingOne users."""

    def __init__(self, client: PingOneClient):
        self.client = client

    def _find_one(self, attribute: str, value: str, population_id: Optional[str]) -> Optional[dict]:
        scim_filter = f'{attribute} eq "{_quote(value)}"'
        if population_id:
            scim_filter += f' and population.id eq "{_quote(population_id)}"'
        payload = self.client.call("GET", "/users", params={"filter": scim_filter}, area="user")
        for user in _embedded_users(payload):
            if str(user.get(attribute, "")).lower() == value.lower():
                return user
        return None

    def find_by_username(self, username: str, population_id: Optional[str] = None) -> Optional[dict]:
        """Return the user whose username matches exactly, or None."""
        return self._find_one("username", username, population_id)

    def find_by_email(self, email: str, population_id: Optional[str] = None) -> Optional[dict]:
        return self._find_one("email", email, population_id)

    def find(
        self,
        username: str = "",
        email: str = "",
        population_id: Optional[str] = None,
    ) -> Tuple[Optional[dict], Optional[str]]:
        """Look a user up by username, then by email.

        Returns:
            ``(user, lookup_method)`` where ``lookup_method`` is ``"username"``,
            ``"email"`` or None when nothing matched.
        """
        if username:
            user = self.find_by_username(username, population_id)
            if user:
                return user, "username"
        if email:
            user = self.find_by_email(email, population_id)
            if user:
                return user, "email"
        return None, None

    def create(self, payload: Dict[str, Any]) -> dict:
        """Create a user; raises UniquenessConflictError when it already exists."""
        return self.client.call("POST", "/users", json=payload, area="import") or {}

    def update(self, user_id: str, changes: Dict[str, Any]) -> dict:
        return self.client.call("PATCH", f"/users/{user_id}", json=changes, area="user") or {}

    def delete(self, user_id: str) -> None:
        self.client.call("DELETE", f"/users/{user_id}", area="user")

    def list_users(self, population_id: Optional[str] = None, page_size: int = PAGE_SIZE) -> Iterator[dict]:
        """Yield every user (with population expanded), following ``_links.next``."""
        params: Optional[Dict[str, Any]] = {"limit": page_size, "expand": "population"}
        if population_id:
            params["filter"] = f'population.id eq "{_quote(population_id)}"'
        path = "/users"
        while path:
            payload = self.client.call("GET", path, params=params, area="user")
            yield from _embedded_users(payload)
            next_link = ((payload or {}).get("_links") or {}).get("next") or {}
            path = next_link.get("href") or ""
            # next hrefs already carry the query string
            params = None
