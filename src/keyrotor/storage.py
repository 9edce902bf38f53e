"""Persistence for key pools.

Two layers:

- ``BlobStore``: a plain string key/value store (in-memory or a JSON file on disk).
- ``KeyStore``: encodes a service's pool as JSON under ``"api_keys_" + service`` and
  turns every read/write failure into a logged, counted no-op.
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from .state import KeyEntry

STORAGE_PREFIX = "api_keys_"

logger = logging.getLogger("keyrotor")


def storage_key(service: str) -> str:
    return f"{STORAGE_PREFIX}{service}"


class BlobStore(ABC):
    """Keyed string store consumed by KeyStore."""

    @abstractmethod
    def get(self, key: str) -> Union[str, None]:
        """Return the stored value, or None when absent."""

    @abstractmethod
    def put(self, key: str, value: str) -> None:
        """Replace the value stored under key."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Delete key; absent keys are ignored."""

    @abstractmethod
    def keys(self) -> list[str]:
        """Return every stored key."""


class MemoryBlobStore(BlobStore):
    def __init__(self, initial: Union[dict[str, str], None] = None):
        self._data: dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Union[str, None]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data)


class JsonFileBlobStore(BlobStore):
    """All keys live in a single JSON object on disk.

    Every write rewrites the whole document into a temp file next to it and swaps it
    in with os.replace, so readers see either the old or the new document.
    """

    def __init__(self, path: Union[str, os.PathLike]):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> dict[str, str]:
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} does not contain a JSON object")
        return data

    def _write(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def get(self, key: str) -> Union[str, None]:
        with self._lock:
            return self._read().get(key)

    def put(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if data.pop(key, None) is not None:
                self._write(data)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._read())


@dataclass
class PersistenceErrors:
    load: int = 0
    save: int = 0
    remove: int = 0
    last_error: Union[BaseException, None] = None

    @property
    def total(self) -> int:
        return self.load + self.save + self.remove


class KeyStore:
    def __init__(self, blobs: Union[BlobStore, None] = None):
        self.blobs = blobs if blobs is not None else MemoryBlobStore()
        self.errors = PersistenceErrors()
        self._errors_lock = threading.Lock()

    def _failed(self, op: str, service: str, err: BaseException) -> None:
        with self._errors_lock:
            setattr(self.errors, op, getattr(self.errors, op) + 1)
            self.errors.last_error = err
        logger.error(f"persistence {op} failed for service={service}: {err!r}")

    def exists(self, service: str) -> bool:
        try:
            return self.blobs.get(storage_key(service)) is not None
        except Exception as e:
            self._failed("load", service, e)
            return False

    def load(self, service: str) -> list[KeyEntry]:
        """Return the stored pool; absent, unreadable or corrupt data all give []."""
        try:
            raw = self.blobs.get(storage_key(service))
            if raw is None:
                return []
            data = json.loads(raw)
            if not isinstance(data, list):
                raise ValueError("stored pool is not a JSON array")
            return [KeyEntry.from_dict(item) for item in data]
        except Exception as e:
            self._failed("load", service, e)
            return []

    def save(self, service: str, entries: list[KeyEntry]) -> bool:
        try:
            payload = json.dumps([e.to_dict() for e in entries])
            self.blobs.put(storage_key(service), payload)
            return True
        except Exception as e:
            self._failed("save", service, e)
            return False

    def remove(self, service: str) -> bool:
        try:
            self.blobs.remove(storage_key(service))
            return True
        except Exception as e:
            self._failed("remove", service, e)
            return False

    def list_service_names(self) -> list[str]:
        try:
            keys = self.blobs.keys()
        except Exception as e:
            self._failed("load", "*", e)
            return []
        return [k[len(STORAGE_PREFIX) :] for k in keys if k.startswith(STORAGE_PREFIX)]


def coerce_store(store: Union[KeyStore, BlobStore, str, os.PathLike, None]) -> KeyStore:
    """Turn None | KeyStore | BlobStore | file path into a KeyStore."""
    if store is None:
        return KeyStore(MemoryBlobStore())
    if isinstance(store, KeyStore):
        return store
    if isinstance(store, BlobStore):
        return KeyStore(store)
    if isinstance(store, (str, os.PathLike)):
        return KeyStore(JsonFileBlobStore(store))
    raise TypeError("store must be None, a KeyStore, a BlobStore, or a file path")
