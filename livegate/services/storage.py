"""
LiveGate — Local Storage

Two KeyValueStore back ends:
  • MemoryStore     — process-local dict (tests, ephemeral viewers)
  • JsonFileStore   — one JSON object on disk, guarded by a FileLock so
                      several processes sharing a cache never clobber
                      each other's read-merge-write.

Keys are namespaced as {prefix}:{kind}:{session_id} by `storage_key`.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Callable, Dict, Optional

from filelock import FileLock

from ..core.config import storage_cfg

logger = logging.getLogger("livegate.storage")


def storage_key(kind: str, session_id: str, prefix: Optional[str] = None) -> str:
    return f"{prefix or storage_cfg.prefix}:{kind}:{session_id}"


class MemoryStore:
    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def update(self, key: str, fn: Callable[[Optional[str]], Optional[str]]) -> Optional[str]:
        value = fn(self._data.get(key))
        if value is None:
            self._data.pop(key, None)
        else:
            self._data[key] = value
        return value


class JsonFileStore:
    """Whole-file JSON cache. Every operation reloads under the lock."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = FileLock(path + ".lock")
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def _load(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Storage: unreadable cache {self.path}, starting empty: {e}")
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def _save(self, data: Dict[str, str]) -> None:
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp, self.path)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if data.pop(key, None) is not None:
                self._save(data)

    def update(self, key: str, fn: Callable[[Optional[str]], Optional[str]]) -> Optional[str]:
        with self._lock:
            data = self._load()
            value = fn(data.get(key))
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
            self._save(data)
            return value
