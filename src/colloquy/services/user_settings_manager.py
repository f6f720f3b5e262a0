import json
import logging
import os
from typing import Any, Dict, Optional

from src.colloquy.config import (
    DEFAULT_DB_PATH,
    DEFAULT_GEMINI_MODEL,
    DEFAULT_HISTORY_MAX_MESSAGES,
    DEFAULT_HISTORY_MAX_TOKENS,
    DEFAULT_OLLAMA_HOST,
    DEFAULT_OLLAMA_MODEL,
    SETTINGS_FILE,
)

logger = logging.getLogger(__name__)

# Provider identifiers paired with the model used when none is configured.
PROVIDER_DEFAULT_MODELS: Dict[str, str] = {
    "gemini": DEFAULT_GEMINI_MODEL,
    "ollama": DEFAULT_OLLAMA_MODEL,
}

DEFAULT_API_KEYS = {
    "google": "",
}

# Environment variables checked before the settings file, in order.
API_KEY_ENV_VARS: Dict[str, tuple] = {
    "google": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
}


def _default_settings() -> Dict[str, Any]:
    return {
        "provider": "gemini",
        "model": PROVIDER_DEFAULT_MODELS["gemini"],
        "history": {
            "max_messages": DEFAULT_HISTORY_MAX_MESSAGES,
            "max_tokens": DEFAULT_HISTORY_MAX_TOKENS,
        },
        "api_keys": DEFAULT_API_KEYS.copy(),
        "ollama_host": DEFAULT_OLLAMA_HOST,
        "database_path": str(DEFAULT_DB_PATH),
    }


def _normalize_provider(value: Any) -> str:
    if isinstance(value, str):
        candidate = value.strip().lower()
        aliases = {"google": "gemini", "google-gemini": "gemini"}
        candidate = aliases.get(candidate, candidate)
        if candidate in PROVIDER_DEFAULT_MODELS:
            return candidate
    return "gemini"


def _normalize_model(value: Any, provider: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return PROVIDER_DEFAULT_MODELS[provider]


def _positive_int(value: Any, fallback: int) -> int:
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)) and int(value) > 0:
        return int(value)
    return fallback


def _sanitize_history(history: Any) -> Dict[str, int]:
    defaults = _default_settings()["history"]
    if not isinstance(history, dict):
        return dict(defaults)
    return {
        "max_messages": _positive_int(history.get("max_messages"), defaults["max_messages"]),
        "max_tokens": _positive_int(history.get("max_tokens"), defaults["max_tokens"]),
    }


def _sanitize_api_keys(api_keys: Any) -> Dict[str, str]:
    sanitized = DEFAULT_API_KEYS.copy()
    if isinstance(api_keys, dict):
        for key in sanitized.keys():
            value = api_keys.get(key)
            if key == "google" and not value:
                value = api_keys.get("gemini")
            if isinstance(value, str):
                sanitized[key] = value.strip()
    return sanitized


def normalize_settings(data: Dict[str, Any]) -> Dict[str, Any]:
    settings = _default_settings()
    provider = _normalize_provider(data.get("provider", settings["provider"]))
    settings["provider"] = provider
    settings["model"] = _normalize_model(data.get("model"), provider)
    settings["history"] = _sanitize_history(data.get("history"))
    settings["api_keys"] = _sanitize_api_keys(data.get("api_keys"))

    host = data.get("ollama_host")
    if isinstance(host, str) and host.strip():
        settings["ollama_host"] = host.strip().rstrip("/")

    db_path = data.get("database_path")
    if isinstance(db_path, str) and db_path.strip():
        settings["database_path"] = db_path.strip()
    return settings


def load_user_settings() -> Dict[str, Any]:
    """
    Load user settings from disk, normalizing every field and falling back to defaults.
    """
    if not SETTINGS_FILE.exists():
        return _default_settings()

    try:
        with open(SETTINGS_FILE, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (IOError, json.JSONDecodeError) as exc:
        logger.warning("Failed to read user settings from %s: %s", SETTINGS_FILE, exc)
        return _default_settings()

    if not isinstance(data, dict):
        logger.warning("User settings file %s does not contain a JSON object.", SETTINGS_FILE)
        return _default_settings()

    return normalize_settings(data)


def save_user_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    """
    Persist the normalized user settings payload to disk.
    """
    payload = normalize_settings(settings)
    SETTINGS_FILE.parent.mkdir(parents=True, exist_ok=True)
    with open(SETTINGS_FILE, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=4)

    logger.info("User settings saved to %s", SETTINGS_FILE)
    return payload


def update_history_settings(max_messages: Optional[int] = None, max_tokens: Optional[int] = None) -> Dict[str, Any]:
    """
    Merge and persist a new history budget.
    """
    settings = load_user_settings()
    history = dict(settings["history"])
    if max_messages is not None:
        history["max_messages"] = max_messages
    if max_tokens is not None:
        history["max_tokens"] = max_tokens
    settings["history"] = history
    return save_user_settings(settings)


def update_provider_settings(provider: str, model: Optional[str] = None) -> Dict[str, Any]:
    """
    Switch the completion provider and, optionally, the model it should use.
    """
    settings = load_user_settings()
    settings["provider"] = _normalize_provider(provider)
    settings["model"] = model
    return save_user_settings(settings)


def get_api_key(provider_key: str, settings: Optional[Dict[str, Any]] = None) -> Optional[str]:
    """
    Resolve an API key. Environment variables take precedence over the settings file.
    """
    for env_var in API_KEY_ENV_VARS.get(provider_key, ()):
        value = os.getenv(env_var)
        if value and value.strip():
            logger.debug("Found API key in %s environment variable", env_var)
            return value.strip()

    if settings is None:
        settings = load_user_settings()
    value = (settings.get("api_keys") or {}).get(provider_key)
    if isinstance(value, str) and value.strip():
        logger.debug("Found API key for '%s' in user settings", provider_key)
        return value.strip()
    return None


def get_ollama_host(settings: Optional[Dict[str, Any]] = None) -> str:
    """
    Resolve the Ollama server URL, preferring the OLLAMA_HOST environment variable.
    """
    host = os.getenv("OLLAMA_HOST")
    if host and host.strip():
        return host.strip().rstrip("/")
    if settings is None:
        settings = load_user_settings()
    return settings.get("ollama_host") or DEFAULT_OLLAMA_HOST
