"""
Client-local key/value persistence.

Writes are synchronous so a preference saved here is visible to the next
read immediately, whatever happens to the slower server mirror.

Keys:
    "currentTenantId"             most recently selected tenant
    "activeContext:<tenant_id>"   {"type": ..., "locationId": ...} per tenant
"""

import json
import logging
import os
from pathlib import Path
from typing import Iterator, Optional, Protocol

logger = logging.getLogger(__name__)

CURRENT_TENANT_KEY = "currentTenantId"
CONTEXT_KEY_PREFIX = "activeContext:"


def context_key(tenant_id: str) -> str:
    return f"{CONTEXT_KEY_PREFIX}{tenant_id}"


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...

    def keys(self) -> Iterator[str]:
        ...


class MemoryKeyValueStore:
    """Process-local store, one per session."""

    def __init__(self, initial: Optional[dict[str, str]] = None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> Iterator[str]:
        return iter(list(self._data))


class JsonFileKeyValueStore:
    """
    Store backed by a single JSON object on disk.

    The whole file is rewritten on every mutation (atomic replace), which is
    fine for the handful of keys kept here.
    """

    def __init__(self, path: str | os.PathLike):
        self.path = Path(path)
        self._data: dict[str, str] = self._read()

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable local state file {self.path}: {e}")
            return {}
        if not isinstance(raw, dict):
            return {}
        return {str(k): str(v) for k, v in raw.items()}

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self._data, sort_keys=True), encoding="utf-8")
        os.replace(tmp_path, self.path)

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self._flush()

    def remove(self, key: str) -> None:
        if key in self._data:
            del self._data[key]
            self._flush()

    def keys(self) -> Iterator[str]:
        return iter(list(self._data))


def clear_session_keys(store: KeyValueStore) -> None:
    """Remove the tenant pointer and every persisted context."""
    store.remove(CURRENT_TENANT_KEY)
    for key in list(store.keys()):
        if key.startswith(CONTEXT_KEY_PREFIX):
            store.remove(key)
