"""PingOne population lookups."""
from __future__ import annotations
from typing import List, Optional, Set

from .client import PingOneClient


class PopulationService:
    """Read-only access to the environment's populations."""

    def __init__(self, client: PingOneClient):
        self.client = client

    def list(self) -> List[dict]:
        payload = self.client.call("GET", "/populations", area="population") or {}
        return (payload.get("_embedded") or {}).get("populations") or []

    def get(self, population_id: str) -> dict:
        """Fetch one population; raises NotFoundError when it does not exist."""
        return self.client.call("GET", f"/populations/{population_id}", area="population") or {}

    def ids(self) -> Set[str]:
        return {p["id"] for p in self.list() if p.get("id")}

    def default(self, populations: Optional[List[dict]] = None) -> Optional[dict]:
        """Return the population flagged ``default``, else the first one listed."""
        populations = self.list() if populations is None else populations
        for population in populations:
            if population.get("default"):
                return population
        return populations[0] if populations else None

    def summaries(self) -> List[dict]:
        """Compact ``{id, name, userCount, default}`` rows for the UI."""
        return [
            {
                "id": p.get("id"),
                "name": p.get("name", ""),
                "userCount": p.get("userCount", 0),
                "default": bool(p.get("default", False)),
            }
            for p in self.list()
        ]
