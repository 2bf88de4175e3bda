"""Settings dataclass and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

__all__ = [
    "CHAT_MODES",
    "SECRET_FIELDS",
    "Settings",
    "SettingsStore",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".sidekick"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "SIDEKICK_MODEL": "selected_model",
    "SIDEKICK_CHAT_MODE": "chat_mode",
    "SIDEKICK_PERSONA": "persona",
    "SIDEKICK_OLLAMA_URL": "ollama_url",
    "SIDEKICK_LM_STUDIO_URL": "lm_studio_url",
    "SIDEKICK_CUSTOM_ENDPOINT": "custom_endpoint",
    "SIDEKICK_GROQ_API_KEY": "groq_api_key",
    "SIDEKICK_GEMINI_API_KEY": "gemini_api_key",
    "SIDEKICK_OPENAI_API_KEY": "openai_api_key",
    "SIDEKICK_OPENROUTER_API_KEY": "openrouter_api_key",
    "SIDEKICK_CUSTOM_API_KEY": "custom_api_key",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "SIDEKICK_DEBUG_LOGGING": "debug_logging",
    "SIDEKICK_USE_TOOLS": "use_tools",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "SIDEKICK_REQUEST_TIMEOUT": "request_timeout",
    "SIDEKICK_TEMPERATURE": "temperature",
    "SIDEKICK_GRACE_PERIOD": "grace_period",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "SIDEKICK_MAX_TOKENS": "max_tokens",
    "SIDEKICK_CONTEXT_LIMIT": "context_limit",
    "SIDEKICK_WEB_LIMIT": "web_limit",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}

CHAT_MODES: tuple[str, ...] = ("chat", "web", "page")
SECRET_FIELDS: tuple[str, ...] = (
    "groq_api_key",
    "gemini_api_key",
    "openai_api_key",
    "openrouter_api_key",
    "custom_api_key",
)


def _default_personas() -> dict[str, str]:
    return {"Default": "You are a helpful, concise assistant."}


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions.

    ``models`` holds plain mappings (``id``, ``host`` and optionally ``name``)
    so the file stays hand-editable; :mod:`sidekick.ai.hosts` validates them.
    """

    models: list[dict[str, Any]] = field(default_factory=list)
    selected_model: str | None = None
    chat_mode: str = "chat"
    temperature: float = 0.7
    max_tokens: int = 32048
    top_p: float = 1.0
    presence_penalty: float = 0.0
    context_limit: int = 64
    web_limit: int = 16
    persona: str = "Default"
    personas: dict[str, str] = field(default_factory=_default_personas)
    use_note: bool = False
    note_content: str = ""
    user_name: str = ""
    user_profile: str = ""
    use_tools: bool = True
    ollama_url: str = "http://localhost:11434"
    lm_studio_url: str = "http://localhost:1234"
    custom_endpoint: str = ""
    groq_api_key: str = ""
    gemini_api_key: str = ""
    openai_api_key: str = ""
    openrouter_api_key: str = ""
    custom_api_key: str = ""
    default_headers: dict[str, str] = field(default_factory=dict)
    retriever_top_k: int = 3
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    tool_timeout: float = 30.0
    grace_period: float = 2.0
    debug_logging: bool = False

    def persona_text(self) -> str:
        return self.personas.get(self.persona, "") if self.personas else ""


def redact_secret(secret: str | None) -> str:
    """Return a display-safe hint for ``secret``."""

    if not secret:
        return ""
    if len(secret) <= 8:
        return "*" * len(secret)
    return f"{secret[:4]}…{secret[-4:]}"


class SettingsStore:
    """Persistence adapter for :class:`Settings`.

    API keys only ever come from the environment or runtime overrides; they
    are stripped before anything is written to disk.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            for secret in SECRET_FIELDS:
                if payload.pop(secret, None):
                    LOGGER.warning("Ignoring %s stored in %s; set it via the environment", secret, self._path)
            data = _filter_fields(payload)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
        LOGGER.debug("Settings loaded from %s: %d models, selected=%s", self._path, len(settings.models), settings.selected_model)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")

        settings = self._apply_env_overrides(settings)
        return _normalize(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        payload = self._serialize(settings)
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        for secret in SECRET_FIELDS:
            data.pop(secret, None)
        data["version"] = _SETTINGS_VERSION
        return data

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            payload = json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain a JSON object", self._path)
            return {}
        return payload

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {field.name for field in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        personas_override = filtered.get("personas")
        if isinstance(personas_override, Mapping):
            merged = dict(settings.personas or {})
            merged.update(personas_override)
            filtered["personas"] = merged
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _normalize(settings: Settings) -> Settings:
    if settings.chat_mode not in CHAT_MODES:
        LOGGER.warning("Unknown chat mode %r; falling back to 'chat'", settings.chat_mode)
        settings = replace(settings, chat_mode="chat")
    if not isinstance(settings.models, list):
        settings = replace(settings, models=[])
    return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {field.name for field in fields(Settings)}
    return {key: value for key, value in payload.items() if key in allowed}
