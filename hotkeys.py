from pynput import keyboard

from config import (
    DEFAULT_HOTKEY_RECORD,
    DEFAULT_HOTKEY_STATUS,
    DEFAULT_HOTKEY_TOGGLE,
)

_MODIFIER_MAP = {
    "ctrl": "<ctrl>",
    "control": "<ctrl>",
    "alt": "<alt>",
    "shift": "<shift>",
    "cmd": "<cmd>",
    "win": "<cmd>",
    "super": "<cmd>",
}
_MODIFIERS = {"<ctrl>", "<alt>", "<shift>", "<cmd>"}


class HotkeyManager:
    """Registers global hotkeys for the operator commands (record, toggle, status)."""

    def __init__(
        self,
        on_record=None,
        on_toggle=None,
        on_status=None,
        record_hotkey: str = DEFAULT_HOTKEY_RECORD,
        toggle_hotkey: str = DEFAULT_HOTKEY_TOGGLE,
        status_hotkey: str = DEFAULT_HOTKEY_STATUS,
    ):
        self._actions = {
            "record": (record_hotkey, on_record),
            "toggle": (toggle_hotkey, on_toggle),
            "status": (status_hotkey, on_status),
        }
        self._listener = None
        self._running = False

    def bindings(self) -> dict:
        """Map normalized pynput hotkey strings to their callbacks."""
        bound = {}
        for name, (hotkey, callback) in self._actions.items():
            if callback is None:
                continue
            normalized = _normalize_hotkey(hotkey)
            if normalized in bound:
                raise ValueError(f"Hotkey '{hotkey}' is assigned to more than one command.")
            bound[normalized] = callback
        return bound

    def start(self):
        if self._running:
            return
        self._listener = keyboard.GlobalHotKeys(self.bindings())
        self._listener.daemon = True
        self._listener.start()
        self._running = True

    def stop(self):
        if self._listener:
            self._listener.stop()
            self._listener = None
        self._running = False

    def get_hotkeys(self) -> dict:
        return {name: hotkey for name, (hotkey, _callback) in self._actions.items()}


def _normalize_hotkey(hotkey: str) -> str:
    if not hotkey or not isinstance(hotkey, str):
        raise ValueError("Hotkey must be a non-empty string.")

    parts = [p.strip().lower() for p in hotkey.split("+") if p.strip()]
    if len(parts) < 2:
        raise ValueError("Use at least one modifier and one key (example: Ctrl+Alt+R).")

    normalized_parts = []
    for part in parts:
        mapped = _MODIFIER_MAP.get(part)
        if mapped:
            normalized_parts.append(mapped)
        elif len(part) == 1 and part.isalnum():
            normalized_parts.append(part)
        elif part == "space":
            normalized_parts.append("<space>")
        else:
            raise ValueError(f"Unsupported key '{part}'. Use modifiers plus a letter, digit or Space.")

    if not any(p in _MODIFIERS for p in normalized_parts):
        raise ValueError("Hotkey must include at least one modifier (Ctrl/Alt/Shift/Cmd).")
    if normalized_parts[-1] in _MODIFIERS:
        raise ValueError("Hotkey must end with a non-modifier key.")

    return "+".join(normalized_parts)
