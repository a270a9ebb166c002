"""Persistent supervisor settings helpers."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from platformdirs import user_config_dir, user_log_dir

logger = logging.getLogger("kdbguard.config")

SETTINGS_PATH = Path(user_config_dir("kdbguard")) / "settings.json"
LOG_PATH = Path(user_log_dir("kdbguard")) / "kdbguard.log"
SETTINGS_SCHEMA_VERSION = "settings.v1"

DEFAULT_EXECUTABLE = "q"
DEFAULT_KDB_PORT = 5555
DEFAULT_API_HOST = "127.0.0.1"
DEFAULT_API_PORT = 7780

_DELAY_KEYS = (
    "launch_window_seconds",
    "kill_settle_seconds",
    "stop_settle_seconds",
    "restart_settle_seconds",
)


def default_settings() -> dict[str, Any]:
    return {
        "schema_version": SETTINGS_SCHEMA_VERSION,
        "executable": DEFAULT_EXECUTABLE,
        "kdb_port": DEFAULT_KDB_PORT,
        "api_host": DEFAULT_API_HOST,
        "api_port": DEFAULT_API_PORT,
        "launch_window_seconds": 2.0,
        "kill_settle_seconds": 2.0,
        "stop_settle_seconds": 1.0,
        "restart_settle_seconds": 2.0,
    }


def _validate_port(name: str, value: Any) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer") from None
    if not 1 <= port <= 65535:
        raise ValueError(f"{name} must be between 1 and 65535")
    return port


def validate_settings(settings: dict[str, Any]) -> dict[str, Any]:
    """Validate settings shape and fill missing keys with defaults."""
    if not isinstance(settings, dict):
        raise ValueError("settings must be object")
    schema_version = settings.get("schema_version", SETTINGS_SCHEMA_VERSION)
    if schema_version != SETTINGS_SCHEMA_VERSION:
        raise ValueError("unsupported settings schema_version")
    defaults = default_settings()

    executable = str(settings.get("executable", defaults["executable"])).strip()
    if not executable:
        raise ValueError("executable must be non-empty")
    api_host = str(settings.get("api_host", defaults["api_host"])).strip() or DEFAULT_API_HOST

    validated: dict[str, Any] = {
        "schema_version": SETTINGS_SCHEMA_VERSION,
        "executable": executable,
        "kdb_port": _validate_port("kdb_port", settings.get("kdb_port", defaults["kdb_port"])),
        "api_host": api_host,
        "api_port": _validate_port("api_port", settings.get("api_port", defaults["api_port"])),
    }
    for key in _DELAY_KEYS:
        try:
            delay = float(settings.get(key, defaults[key]))
        except (TypeError, ValueError):
            raise ValueError(f"{key} must be a number") from None
        if delay < 0:
            raise ValueError(f"{key} must not be negative")
        validated[key] = delay
    return validated


def apply_env_overrides(settings: dict[str, Any]) -> dict[str, Any]:
    """Apply KDBGUARD_* environment overrides on top of validated settings."""
    overrides: dict[str, Any] = dict(settings)
    executable = os.getenv("KDBGUARD_EXECUTABLE")
    if executable:
        overrides["executable"] = executable
    kdb_port = os.getenv("KDBGUARD_PORT")
    if kdb_port:
        overrides["kdb_port"] = kdb_port
    api_port = os.getenv("KDBGUARD_API_PORT")
    if api_port:
        overrides["api_port"] = api_port
    return validate_settings(overrides)


def load_settings(path: Path = SETTINGS_PATH) -> dict[str, Any]:
    """Load settings from disk (or defaults) and apply environment overrides."""
    settings = default_settings()
    if path.exists():
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            settings = validate_settings(raw)
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable settings file %s: %s", path, exc)
    return apply_env_overrides(settings)


def save_settings(settings: dict[str, Any], path: Path = SETTINGS_PATH) -> dict[str, Any]:
    """Validate and persist settings to disk."""
    validated = validate_settings(settings)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(validated, indent=2), encoding="utf-8")
    return validated
