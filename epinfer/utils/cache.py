"""
Result caching for expensive search and profile batches.

A cache maps a deterministic key, derived from the full configuration of a
batch, to its pickled result. Keys are content hashes, so changing any
setting (seed, particle count, data) produces a different entry.
"""

from __future__ import annotations

import hashlib
import json
import os
import pickle
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, TypeVar, Union

from epinfer.utils.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def make_key(config: Mapping[str, Any]) -> str:
    """SHA-256 of the configuration serialized as sorted JSON."""
    payload = json.dumps(config, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ResultCache:
    """Base cache: always recomputes."""

    def get(self, key: str) -> Any:
        raise KeyError(key)

    def put(self, key: str, value: Any) -> None:
        pass

    def __contains__(self, key: str) -> bool:
        return False

    def get_or_compute(self, key: str, compute: Callable[[], T]) -> T:
        """Return the cached value for ``key``, computing and storing it on a miss."""
        if key in self:
            logger.info("Cache hit for %s", key[:12])
            return self.get(key)
        value = compute()
        self.put(key, value)
        return value


class NullCache(ResultCache):
    """Cache that stores nothing."""


class MemoryCache(ResultCache):
    """In-process dictionary cache."""

    def __init__(self):
        self._store: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            return self._store[key]

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._store[key] = value

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._store

    def __len__(self) -> int:
        return len(self._store)


class DirectoryCache(ResultCache):
    """
    One pickle file per key under ``directory``.

    Writes go to a temporary file first and are renamed into place, so a
    crashed run never leaves a truncated entry behind.
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.pkl"

    def get(self, key: str) -> Any:
        path = self._path(key)
        if not path.exists():
            raise KeyError(key)
        with open(path, "rb") as f:
            return pickle.load(f)

    def put(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp = path.with_suffix(f".{os.getpid()}.{threading.get_ident()}.tmp")
        with open(tmp, "wb") as f:
            pickle.dump(value, f)
        os.replace(tmp, path)
        logger.debug("Cached %s", path)

    def __contains__(self, key: str) -> bool:
        return self._path(key).exists()
