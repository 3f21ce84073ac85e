"""Key/value persistence port.

Stores hold UTF-8 JSON text under fixed keys. Every ``set``/``remove`` notifies
subscribers with the key that changed so independent views can re-read.
"""

from __future__ import annotations

import json
import os
import tempfile
from typing import Callable, Dict, List, Optional, Protocol

import structlog


logger = structlog.get_logger(__name__)

MAPPINGS_KEY = "vs_mappings_v1"
PREFILL_KEY = "vs_fhir_prefill_v1"
BUNDLE_DRAFT_KEY = "vs_bundle_draft_v1"
AUDIT_KEY = "vs_audit_stream_v1"

ChangeHandler = Callable[[str], None]
Unsubscribe = Callable[[], None]


class KeyValueStorage(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def subscribe(self, handler: ChangeHandler) -> Unsubscribe: ...


class _Notifier:
    def __init__(self):
        self._handlers: List[ChangeHandler] = []

    def subscribe(self, handler: ChangeHandler) -> Unsubscribe:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def notify(self, key: str) -> None:
        for handler in list(self._handlers):
            handler(key)


class MemoryStorage(_Notifier):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        super().__init__()
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self.notify(key)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)
        self.notify(key)


class JsonFileStorage(_Notifier):
    """One file per key inside ``directory``; writes go through a temp file and ``os.replace``."""

    def __init__(self, directory: str):
        super().__init__()
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def _path(self, key: str) -> str:
        return os.path.join(self.directory, f"{key}.json")

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not os.path.exists(path):
            return None
        try:
            with open(path, encoding="utf-8") as f:
                return f.read()
        except UnicodeDecodeError:
            logger.warning("Persisted state is not valid UTF-8; treated as absent", key=key, path=path)
            return None

    def set(self, key: str, value: str) -> None:
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp, self._path(key))
        except OSError:
            if os.path.exists(tmp):
                os.remove(tmp)
            logger.error("Storage write failed", key=key, directory=self.directory)
            raise
        self.notify(key)

    def remove(self, key: str) -> None:
        path = self._path(key)
        if os.path.exists(path):
            os.remove(path)
        self.notify(key)


def read_json_list(storage: KeyValueStorage, key: str) -> List:
    """Parsed list stored under ``key``; missing, corrupt or non-list content reads as empty."""
    raw = storage.get(key)
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Corrupt persisted state treated as empty", key=key)
        return []
    if not isinstance(value, list):
        logger.warning("Persisted state is not a list; treated as empty", key=key)
        return []
    return value


def write_json(storage: KeyValueStorage, key: str, value) -> None:
    storage.set(key, json.dumps(value, ensure_ascii=False))
