"""Tests for settings persistence and overrides."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from sidekick.services.settings import Settings, SettingsStore, redact_secret


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    settings = SettingsStore(tmp_path / "settings.json").load()

    assert settings == Settings()
    assert settings.persona_text() == "You are a helpful, concise assistant."


def test_save_round_trip_strips_api_keys(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "settings.json"
    store = SettingsStore(path)
    original = Settings(
        models=[{"id": "m", "host": "groq"}],
        selected_model="m",
        groq_api_key="gsk-secret",
        temperature=0.3,
    )

    store.save(original)
    payload = json.loads(path.read_text(encoding="utf-8"))
    loaded = store.load()

    assert payload["version"] == 1
    assert "groq_api_key" not in payload
    assert not path.with_suffix(".tmp").exists()
    assert loaded.selected_model == "m"
    assert loaded.temperature == 0.3
    assert loaded.groq_api_key == ""


def test_secrets_in_file_are_ignored(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"openai_api_key": "sk-leaked", "persona": "Default"}), encoding="utf-8")

    settings = SettingsStore(path).load()

    assert settings.openai_api_key == ""
    assert "Ignoring openai_api_key" in caplog.text


@pytest.mark.parametrize("body", ["{not json", "[1, 2, 3]"])
def test_malformed_files_fall_back_to_defaults(tmp_path: Path, body: str) -> None:
    path = tmp_path / "settings.json"
    path.write_text(body, encoding="utf-8")

    assert SettingsStore(path).load() == Settings()


def test_unknown_fields_are_dropped(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"web_limit": 4, "legacy_flag": True}), encoding="utf-8")

    settings = SettingsStore(path).load()

    assert settings.web_limit == 4


def test_environment_overrides_win_over_cli(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SIDEKICK_MODEL", "env-model")
    monkeypatch.setenv("SIDEKICK_USE_TOOLS", "off")
    monkeypatch.setenv("SIDEKICK_MAX_TOKENS", "512")
    monkeypatch.setenv("SIDEKICK_TEMPERATURE", "0.1")
    monkeypatch.setenv("SIDEKICK_GROQ_API_KEY", "gsk-env")

    settings = SettingsStore(tmp_path / "settings.json").load(
        overrides={"selected_model": "cli-model", "context_limit": 8}
    )

    assert settings.selected_model == "env-model"
    assert settings.context_limit == 8
    assert settings.use_tools is False
    assert settings.max_tokens == 512
    assert settings.temperature == 0.1
    assert settings.groq_api_key == "gsk-env"


def test_invalid_numeric_environment_values_are_ignored(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SIDEKICK_WEB_LIMIT", "lots")
    monkeypatch.setenv("SIDEKICK_GRACE_PERIOD", "soon")

    settings = SettingsStore(tmp_path / "settings.json").load()

    assert settings.web_limit == Settings().web_limit
    assert settings.grace_period == Settings().grace_period


def test_persona_overrides_merge(tmp_path: Path) -> None:
    settings = SettingsStore(tmp_path / "settings.json").load(
        overrides={"personas": {"Pirate": "Talk like a pirate."}, "persona": "Pirate"}
    )

    assert set(settings.personas) == {"Default", "Pirate"}
    assert settings.persona_text() == "Talk like a pirate."


def test_invalid_chat_mode_is_normalized(tmp_path: Path) -> None:
    settings = SettingsStore(tmp_path / "settings.json").load(overrides={"chat_mode": "voice"})

    assert settings.chat_mode == "chat"


def test_redact_secret() -> None:
    assert redact_secret("") == ""
    assert redact_secret(None) == ""
    assert redact_secret("short") == "*****"
    assert redact_secret("sk-1234567890abcd") == "sk-1…abcd"
