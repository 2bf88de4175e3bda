"""Model host resolution: endpoint URLs and credentials per provider."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping

from .orchestration.errors import ConfigurationError

__all__ = [
    "HOSTS",
    "ModelDescriptor",
    "ResolvedModel",
    "api_key_for_host",
    "base_url_for_host",
    "normalize_api_endpoint",
    "resolve_model",
]

LOGGER = logging.getLogger(__name__)

_FIXED_BASE_URLS: Mapping[str, str] = {
    "groq": "https://api.groq.com/openai/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta/openai",
    "openai": "https://api.openai.com/v1",
    "openrouter": "https://openrouter.ai/api/v1",
}

# Hosts whose base URL comes from settings; Ollama is reached through its OpenAI-compatible /v1 API.
_CONFIGURED_BASE_URLS: Mapping[str, Callable[[Any], str]] = {
    "ollama": lambda settings: _join(settings.ollama_url, "v1"),
    "lmStudio": lambda settings: _join(settings.lm_studio_url, "v1"),
    "custom": lambda settings: _join(normalize_api_endpoint(settings.custom_endpoint), "v1"),
}

_API_KEY_FIELDS: Mapping[str, str] = {
    "groq": "groq_api_key",
    "gemini": "gemini_api_key",
    "openai": "openai_api_key",
    "openrouter": "openrouter_api_key",
    "custom": "custom_api_key",
}

HOSTS: tuple[str, ...] = ("groq", "ollama", "gemini", "lmStudio", "openai", "openrouter", "custom")


@dataclass(slots=True, frozen=True)
class ModelDescriptor:
    """A model the user can pick: its id and the host serving it."""

    id: str
    host: str
    name: str | None = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "ModelDescriptor | None":
        model_id = payload.get("id")
        if not isinstance(model_id, str) or not model_id.strip():
            return None
        host = payload.get("host")
        name = payload.get("name")
        return cls(
            id=model_id.strip(),
            host=host.strip() if isinstance(host, str) else "",
            name=name if isinstance(name, str) else None,
        )


@dataclass(slots=True, frozen=True)
class ResolvedModel:
    model_id: str
    host: str
    base_url: str
    api_key: str | None = None

    @property
    def url(self) -> str:
        """Full chat-completions endpoint."""
        return f"{self.base_url}/chat/completions"

    @property
    def auth_header(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}


def _join(base: str | None, suffix: str) -> str:
    base = (base or "").strip().rstrip("/")
    if not base:
        return ""
    return f"{base}/{suffix}"


def normalize_api_endpoint(endpoint: str | None) -> str:
    """Strip whitespace, trailing slashes and any ``/v1[/chat/completions]`` suffix."""

    value = (endpoint or "").strip().rstrip("/")
    for suffix in ("/chat/completions", "/v1"):
        if value.endswith(suffix):
            value = value[: -len(suffix)].rstrip("/")
    return value


def base_url_for_host(host: str, settings: Any) -> str:
    """Return the OpenAI-compatible base URL for ``host`` or ``""`` when unknown."""

    if host in _FIXED_BASE_URLS:
        return _FIXED_BASE_URLS[host]
    builder = _CONFIGURED_BASE_URLS.get(host)
    if builder is None:
        return ""
    return builder(settings)


def api_key_for_host(host: str, settings: Any) -> str | None:
    field_name = _API_KEY_FIELDS.get(host)
    if field_name is None:
        return None
    value = getattr(settings, field_name, "") or ""
    return value.strip() or None


def resolve_model(settings: Any) -> ResolvedModel:
    """Resolve the selected model to an endpoint and credentials.

    Raises :class:`ConfigurationError` when no model is selected, the model is
    not among ``settings.models``, or its host has no usable endpoint.
    """

    if settings is None:
        raise ConfigurationError("Configuration error: No settings loaded.")
    selected = (getattr(settings, "selected_model", None) or "").strip()
    if not selected:
        raise ConfigurationError("Configuration error: No model selected.")

    descriptor: ModelDescriptor | None = None
    for entry in getattr(settings, "models", None) or ():
        if not isinstance(entry, Mapping):
            continue
        candidate = ModelDescriptor.from_mapping(entry)
        if candidate is not None and candidate.id == selected:
            descriptor = candidate
            break
    if descriptor is None:
        raise ConfigurationError(f"Configuration error: Model '{selected}' is not configured.")

    base_url = base_url_for_host(descriptor.host, settings)
    if not base_url:
        raise ConfigurationError(
            f"Configuration error: Could not determine API URL for host '{descriptor.host}'."
        )
    api_key = api_key_for_host(descriptor.host, settings)
    if api_key is None and descriptor.host in _API_KEY_FIELDS:
        LOGGER.warning("No API key configured for host %s", descriptor.host)
    return ResolvedModel(model_id=descriptor.id, host=descriptor.host, base_url=base_url, api_key=api_key)
