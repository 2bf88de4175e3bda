"""Shared pytest fixtures."""

from __future__ import annotations

import os

import pytest

from helpers import make_settings
from sidekick.services.settings import Settings


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    for name in list(os.environ):
        if name.startswith("SIDEKICK_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SIDEKICK_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture
def settings() -> Settings:
    return make_settings()
