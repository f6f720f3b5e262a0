"""Tests for UserSettingsManager - settings persistence and normalization."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

from src.colloquy.config import DEFAULT_HISTORY_MAX_MESSAGES, DEFAULT_HISTORY_MAX_TOKENS, DEFAULT_OLLAMA_HOST
from src.colloquy.services.user_settings_manager import (
    PROVIDER_DEFAULT_MODELS,
    get_api_key,
    get_ollama_host,
    load_user_settings,
    normalize_settings,
    save_user_settings,
    update_history_settings,
    update_provider_settings,
)


@pytest.fixture
def temp_settings_file(tmp_path: Path) -> Path:
    """Create a temporary settings file location."""
    return tmp_path / "user_settings.json"


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("GEMINI_API_KEY", "GOOGLE_API_KEY", "OLLAMA_HOST"):
        monkeypatch.delenv(name, raising=False)


def _mock_settings_file(settings_file: Path) -> Any:
    """Create a context manager that patches SETTINGS_FILE."""
    return patch("src.colloquy.services.user_settings_manager.SETTINGS_FILE", settings_file)


# -- Loading settings tests ------------------------------------------------------------


def test_load_user_settings_returns_defaults_when_file_missing(temp_settings_file: Path) -> None:
    """Test that load_user_settings returns default settings when file doesn't exist."""
    with _mock_settings_file(temp_settings_file):
        settings = load_user_settings()

    assert settings["provider"] == "gemini"
    assert settings["model"] == PROVIDER_DEFAULT_MODELS["gemini"]
    assert settings["history"] == {
        "max_messages": DEFAULT_HISTORY_MAX_MESSAGES,
        "max_tokens": DEFAULT_HISTORY_MAX_TOKENS,
    }
    assert settings["api_keys"] == {"google": ""}
    assert settings["ollama_host"] == DEFAULT_OLLAMA_HOST


def test_load_user_settings_reads_valid_file(temp_settings_file: Path) -> None:
    """Test that load_user_settings correctly reads a valid settings file."""
    settings_data = {
        "provider": "ollama",
        "model": "mistral",
        "history": {"max_messages": 12, "max_tokens": 2000},
        "ollama_host": "http://gpu-box:11434/",
        "database_path": "/var/lib/colloquy/sessions.db",
    }
    temp_settings_file.write_text(json.dumps(settings_data), encoding="utf-8")

    with _mock_settings_file(temp_settings_file):
        settings = load_user_settings()

    assert settings["provider"] == "ollama"
    assert settings["model"] == "mistral"
    assert settings["history"] == {"max_messages": 12, "max_tokens": 2000}
    assert settings["ollama_host"] == "http://gpu-box:11434"
    assert settings["database_path"] == "/var/lib/colloquy/sessions.db"


def test_load_user_settings_handles_malformed_json(temp_settings_file: Path) -> None:
    """Test that load_user_settings handles malformed JSON gracefully."""
    temp_settings_file.write_text("{ invalid json }", encoding="utf-8")

    with _mock_settings_file(temp_settings_file):
        settings = load_user_settings()

    assert settings["provider"] == "gemini"


def test_load_user_settings_ignores_non_object_payload(temp_settings_file: Path) -> None:
    temp_settings_file.write_text("[1, 2, 3]", encoding="utf-8")

    with _mock_settings_file(temp_settings_file):
        assert load_user_settings()["provider"] == "gemini"


# -- Normalization tests ---------------------------------------------------------------


def test_normalize_settings_repairs_invalid_values() -> None:
    settings = normalize_settings(
        {
            "provider": "Google",
            "model": "   ",
            "history": {"max_messages": -4, "max_tokens": "lots"},
            "api_keys": {"google": 42, "other": "x"},
        }
    )

    assert settings["provider"] == "gemini"
    assert settings["model"] == PROVIDER_DEFAULT_MODELS["gemini"]
    assert settings["history"] == {
        "max_messages": DEFAULT_HISTORY_MAX_MESSAGES,
        "max_tokens": DEFAULT_HISTORY_MAX_TOKENS,
    }
    assert settings["api_keys"]["google"] == ""


def test_normalize_settings_unknown_provider_falls_back_to_gemini() -> None:
    assert normalize_settings({"provider": "mystery"})["provider"] == "gemini"


# -- Saving settings tests -------------------------------------------------------------


def test_save_user_settings_writes_normalized_payload(temp_settings_file: Path) -> None:
    with _mock_settings_file(temp_settings_file):
        payload = save_user_settings({"provider": "ollama"})

    on_disk = json.loads(temp_settings_file.read_text(encoding="utf-8"))
    assert on_disk == payload
    assert on_disk["model"] == PROVIDER_DEFAULT_MODELS["ollama"]


def test_update_history_settings_merges_values(temp_settings_file: Path) -> None:
    with _mock_settings_file(temp_settings_file):
        update_history_settings(max_messages=10)
        settings = update_history_settings(max_tokens=3000)

    assert settings["history"] == {"max_messages": 10, "max_tokens": 3000}


def test_update_provider_settings_switches_provider(temp_settings_file: Path) -> None:
    with _mock_settings_file(temp_settings_file):
        settings = update_provider_settings("ollama", "qwen2.5")
        reloaded = load_user_settings()

    assert settings["provider"] == "ollama"
    assert reloaded["model"] == "qwen2.5"


# -- Credential and host resolution tests ----------------------------------------------


def test_get_api_key_prefers_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GOOGLE_API_KEY", "  from-env  ")

    assert get_api_key("google", {"api_keys": {"google": "from-file"}}) == "from-env"


def test_get_api_key_checks_gemini_variable_first(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GEMINI_API_KEY", "gemini-key")
    monkeypatch.setenv("GOOGLE_API_KEY", "google-key")

    assert get_api_key("google", {}) == "gemini-key"


def test_get_api_key_falls_back_to_settings() -> None:
    assert get_api_key("google", {"api_keys": {"google": "from-file"}}) == "from-file"
    assert get_api_key("google", {"api_keys": {"google": "  "}}) is None


def test_get_ollama_host_resolution(monkeypatch: pytest.MonkeyPatch) -> None:
    assert get_ollama_host({"ollama_host": "http://box:11434"}) == "http://box:11434"
    assert get_ollama_host({}) == DEFAULT_OLLAMA_HOST

    monkeypatch.setenv("OLLAMA_HOST", "http://env-host:11434/")
    assert get_ollama_host({"ollama_host": "http://box:11434"}) == "http://env-host:11434"
