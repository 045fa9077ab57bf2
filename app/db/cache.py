"""
Durable Cache

A key -> string blob store with get/set/remove and no expiry.
It stands in for a browser's local storage: the Role Resolver keeps
the session role here and the Aggregation Engine keeps its last rollups.

Two implementations:
- InMemoryCache: development and testing
- JsonFileCache: survives process restarts (single JSON document on disk)

Expiry is NOT a cache concern. TTL logic lives with the caller.
Callers treat CacheError as a miss (on read) or an ignored write.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from threading import Lock
from typing import Optional

logger = logging.getLogger(__name__)


class CacheError(Exception):
    """Raised when the backing store cannot be read or written."""
    pass


class DurableCache(ABC):
    """Abstract key -> string blob store."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored string, or None if absent."""
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store a string under key, replacing any previous value."""
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove key. Removing an absent key is a no-op."""
        pass


class InMemoryCache(DurableCache):
    """
    In-memory implementation.

    Suitable for development, tests and single-process deployments
    where losing the cache on restart is acceptable.
    """

    def __init__(self):
        self._data: dict[str, str] = {}
        self._lock = Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise CacheError(f"Cache values must be strings, got {type(value).__name__}")
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._data)


class JsonFileCache(DurableCache):
    """
    File-backed implementation.

    The whole cache is one JSON object. Every write rewrites the file
    through a temp file + rename so a crash never leaves half a document.
    """

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._lock = Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read_all(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise CacheError(f"Cannot read cache file {self._path}: {e}") from e
        if not isinstance(data, dict):
            raise CacheError(f"Cache file {self._path} does not hold a JSON object")
        return data

    def _write_all(self, data: dict[str, str]) -> None:
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, sort_keys=True), encoding="utf-8")
            os.replace(tmp, self._path)
        except OSError as e:
            raise CacheError(f"Cannot write cache file {self._path}: {e}") from e

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._read_all().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise CacheError(f"Cache values must be strings, got {type(value).__name__}")
        with self._lock:
            try:
                data = self._read_all()
            except CacheError:
                logger.warning(f"Discarding unreadable cache file {self._path}")
                data = {}
            data[key] = value
            self._write_all(data)

    def remove(self, key: str) -> None:
        with self._lock:
            try:
                data = self._read_all()
            except CacheError:
                logger.warning(f"Discarding unreadable cache file {self._path}")
                data = {}
            if key in data:
                del data[key]
                self._write_all(data)


class NamespacedCache(DurableCache):
    """
    Prefixes every key so several sessions can share one backing cache,
    the way each browser profile has its own local storage.
    """

    def __init__(self, inner: DurableCache, namespace: str):
        self._inner = inner
        self._prefix = f"{namespace}:"

    def _key(self, key: str) -> str:
        return self._prefix + key

    def get(self, key: str) -> Optional[str]:
        return self._inner.get(self._key(key))

    def set(self, key: str, value: str) -> None:
        self._inner.set(self._key(key), value)

    def remove(self, key: str) -> None:
        self._inner.remove(self._key(key))
