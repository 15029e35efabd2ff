"""Configuration module for the PingOne bulk admin backend."""
from .settings import AppConfig, load_settings
from .store import SettingsStore

__all__ = ["AppConfig", "load_settings", "SettingsStore"]
