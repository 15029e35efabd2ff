"""File-backed settings store (``data/settings.json``) edited from the UI.

Secrets saved by the UI may be encrypted; such values carry an ``enc:``
prefix followed by a Fernet token.
"""
from __future__ import annotations
import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

ENCRYPTED_PREFIX = "enc:"

# Settings written by older UI versions use kebab-case keys
_KEY_ALIASES = {
    "environmentId": ("environmentId", "environment-id"),
    "apiClientId": ("apiClientId", "api-client-id"),
    "apiSecret": ("api-secret", "apiSecret"),
    "region": ("region",),
    "populationId": ("defaultPopulationId", "populationId", "population-id"),
}


class SettingsStore:
    """Read and write the JSON settings file."""

    def __init__(self, path: str | Path, encryption_key: str = ""):
        self.path = Path(path)
        self._fernet = Fernet(encryption_key.encode("utf-8")) if encryption_key else None
        self._lock = threading.Lock()

    def load(self) -> Dict[str, Any]:
        """Return the raw settings dict, or an empty dict when the file is absent or unreadable."""
        with self._lock:
            try:
                return json.loads(self.path.read_text(encoding="utf-8"))
            except FileNotFoundError:
                return {}
            except (OSError, ValueError) as exc:
                logger.warning("Failed to read settings from %s: %s", self.path, exc)
                return {}

    def save(self, values: Dict[str, Any]) -> None:
        """Merge ``values`` into the settings file."""
        current = self.load()
        current.update(values)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(current, indent=2), encoding="utf-8")

    def get(self, name: str) -> Optional[str]:
        """Look up a setting by canonical name, honouring key aliases.

        Empty strings count as missing. Encrypted values are decrypted;
        a value that cannot be decrypted is reported and treated as missing.
        """
        data = self.load()
        for key in _KEY_ALIASES.get(name, (name,)):
            value = data.get(key)
            if value:
                return self._reveal(key, str(value))
        return None

    def encrypt(self, value: str) -> str:
        """Return ``value`` in the ``enc:`` stored form."""
        if not self._fernet:
            raise RuntimeError("PINGONE_SETTINGS_KEY is not configured")
        return ENCRYPTED_PREFIX + self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def _reveal(self, key: str, value: str) -> Optional[str]:
        if not value.startswith(ENCRYPTED_PREFIX):
            return value
        if not self._fernet:
            logger.error("Setting '%s' is encrypted but PINGONE_SETTINGS_KEY is not configured", key)
            return None
        try:
            return self._fernet.decrypt(value[len(ENCRYPTED_PREFIX):].encode("ascii")).decode("utf-8")
        except InvalidToken:
            logger.error("Failed to decrypt setting '%s' - please re-enter it in settings", key)
            return None
