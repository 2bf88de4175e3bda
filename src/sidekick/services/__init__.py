"""Service layer: settings persistence."""

from .settings import Settings, SettingsStore

__all__ = ["Settings", "SettingsStore"]
