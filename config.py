import ipaddress
import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

# Hotkey defaults defined here to avoid circular import with hotkeys.py
DEFAULT_HOTKEY_RECORD = "Ctrl+Alt+R"
DEFAULT_HOTKEY_TOGGLE = "Ctrl+Alt+T"
DEFAULT_HOTKEY_STATUS = "Ctrl+Alt+S"

_SETTINGS_PATH = Path(__file__).with_name("settings.json")

DEFAULT_SETTINGS = {
    "hotkey_record": DEFAULT_HOTKEY_RECORD,
    "hotkey_toggle": DEFAULT_HOTKEY_TOGGLE,
    "hotkey_status": DEFAULT_HOTKEY_STATUS,
    "last_device_address": "",
    "debug_mode": False,
}

_MISSING = object()


def _clean_setting(key: str, value, allow_empty: bool = False):
    """Return the sanitized value for ``key``, or _MISSING if it is unusable."""
    default = DEFAULT_SETTINGS[key]
    if isinstance(default, bool):
        return value if isinstance(value, bool) else _MISSING
    if not isinstance(value, str):
        return _MISSING
    value = value.strip()
    if not value:
        return value if allow_empty else _MISSING
    if key == "last_device_address":
        try:
            return str(ipaddress.IPv4Address(value))
        except ValueError:
            return _MISSING
    if key.startswith("hotkey_") and "+" not in value:
        return _MISSING
    return value


def _read_settings_file() -> dict:
    if not _SETTINGS_PATH.exists():
        return {}
    try:
        loaded = json.loads(_SETTINGS_PATH.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Ignoring unreadable settings file %s: %s", _SETTINGS_PATH, e)
        return {}
    return loaded if isinstance(loaded, dict) else {}


def load_app_settings() -> dict:
    settings = DEFAULT_SETTINGS.copy()
    loaded = _read_settings_file()
    for key in DEFAULT_SETTINGS:
        value = _clean_setting(key, loaded.get(key))
        if value is not _MISSING:
            settings[key] = value
    return settings


def save_app_settings(settings: dict):
    """Merge the known keys of ``settings`` into settings.json.

    An empty string clears the remembered device address.
    """
    payload = load_app_settings()
    for key in DEFAULT_SETTINGS:
        if key not in settings:
            continue
        value = _clean_setting(key, settings[key], allow_empty=key == "last_device_address")
        if value is not _MISSING:
            payload[key] = value
    try:
        _SETTINGS_PATH.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    except OSError as e:
        logger.error("Failed to save settings to %s: %s", _SETTINGS_PATH, e)
