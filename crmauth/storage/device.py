from __future__ import annotations

import json
import threading
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol

from crmauth.logging import get_logger
from crmauth.storage.models import StorageSignal

logger = get_logger(__name__)

StorageListener = Callable[[StorageSignal], None]


class DeviceStorage(Protocol):
    """Key/value string storage scoped to one device (shared by all tabs)."""

    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class StorageChannel(Protocol):
    """Receive-only feed of storage changes made by *other* tabs."""

    def subscribe(self, listener: StorageListener) -> Callable[[], None]: ...


def read_json(storage: DeviceStorage, key: str) -> Optional[Any]:
    """Read and decode a JSON value, treating corrupt data as absent."""
    raw = storage.get_item(key)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("device_storage_corrupt_value", key=key)
        return None


def write_json(storage: DeviceStorage, key: str, value: Any) -> None:
    storage.set_item(key, json.dumps(value, separators=(",", ":")))


class SharedStorage:
    """Physical device store shared by every tab of the application.

    Writes made through one ``StorageView`` are delivered as ``StorageSignal``
    to listeners of every other view, never to the writer itself. When ``path``
    is given the contents survive process restarts as a JSON file.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self._lock = threading.RLock()
        self._data: Dict[str, str] = {}
        self._listeners: Dict[str, List[StorageListener]] = {}
        self.path = Path(path) if path else None
        if self.path:
            self._load_state()

    def view(self, tab_id: Optional[str] = None) -> "StorageView":
        return StorageView(self, tab_id or uuid.uuid4().hex[:8])

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set_item(self, key: str, value: str, *, origin: Optional[str] = None) -> None:
        with self._lock:
            old = self._data.get(key)
            self._data[key] = value
            self._persist_state()
        if old != value:
            self._dispatch(StorageSignal(key, old, value, origin), origin)

    def remove_item(self, key: str, *, origin: Optional[str] = None) -> None:
        with self._lock:
            old = self._data.pop(key, None)
            if old is not None:
                self._persist_state()
        if old is not None:
            self._dispatch(StorageSignal(key, old, None, origin), origin)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data.keys())

    def _subscribe(self, tab_id: str, listener: StorageListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.setdefault(tab_id, []).append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(tab_id, [])
                if listener in listeners:
                    listeners.remove(listener)

        return _unsubscribe

    def _dispatch(self, signal: StorageSignal, origin: Optional[str]) -> None:
        with self._lock:
            targets = [
                listener
                for tab_id, listeners in self._listeners.items()
                if tab_id != origin
                for listener in listeners
            ]
        for listener in targets:
            try:
                listener(signal)
            except Exception as exc:
                logger.error(
                    "storage_listener_failed", key=signal.key, error=str(exc)
                )

    def _persist_state(self) -> None:
        if not self.path:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(self._data, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist device storage: {exc}")

    def _load_state(self) -> None:
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return
        except ValueError:
            logger.warning("device_storage_file_corrupt", path=str(self.path))
            return
        if isinstance(data, dict):
            self._data = {str(k): str(v) for k, v in data.items()}


class StorageView:
    """One tab's handle onto the shared device store."""

    def __init__(self, storage: SharedStorage, tab_id: str) -> None:
        self.storage = storage
        self.tab_id = tab_id

    def get_item(self, key: str) -> Optional[str]:
        return self.storage.get_item(key)

    def set_item(self, key: str, value: str) -> None:
        self.storage.set_item(key, value, origin=self.tab_id)

    def remove_item(self, key: str) -> None:
        self.storage.remove_item(key, origin=self.tab_id)

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        return self.storage._subscribe(self.tab_id, listener)
