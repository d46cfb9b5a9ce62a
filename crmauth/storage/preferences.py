from __future__ import annotations

from crmauth.storage.device import DeviceStorage, read_json, write_json
from crmauth.storage.models import UIPreferences


class PreferencesStore:
    """UI-preference blob persisted as ``{"state": {"sidebarOpen", "darkMode"}}``."""

    def __init__(self, storage: DeviceStorage, key: str) -> None:
        self.storage = storage
        self.key = key

    def load(self) -> UIPreferences:
        data = read_json(self.storage, self.key)
        state = data.get("state") if isinstance(data, dict) else None
        if not isinstance(state, dict):
            return UIPreferences()
        return UIPreferences(
            sidebar_open=bool(state.get("sidebarOpen", True)),
            dark_mode=bool(state.get("darkMode", False)),
        )

    def save(self, prefs: UIPreferences) -> None:
        data = read_json(self.storage, self.key)
        blob = data if isinstance(data, dict) else {}
        state = blob.get("state") if isinstance(blob.get("state"), dict) else {}
        # Keep unrelated keys other writers store in the same blob
        state = {**state, "sidebarOpen": prefs.sidebar_open, "darkMode": prefs.dark_mode}
        write_json(self.storage, self.key, {**blob, "state": state})

    def toggle_sidebar(self) -> UIPreferences:
        prefs = self.load()
        prefs.sidebar_open = not prefs.sidebar_open
        self.save(prefs)
        return prefs

    def toggle_dark_mode(self) -> UIPreferences:
        prefs = self.load()
        prefs.dark_mode = not prefs.dark_mode
        self.save(prefs)
        return prefs
