"""Key-value backends for the calibration cache.

Values are integers (milliseconds). ``put_many`` is the unit of atomicity:
either every key in the mapping is stored or none is.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Protocol

import structlog

logger = structlog.get_logger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[int]: ...

    def get_many(self, keys: Iterable[str]) -> Dict[str, int]: ...

    def put(self, key: str, value: int) -> None: ...

    def put_many(self, values: Mapping[str, int]) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    """Process-local store; nothing survives a restart."""

    def __init__(self) -> None:
        self._data: Dict[str, int] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[int]:
        with self._lock:
            return self._data.get(key)

    def get_many(self, keys: Iterable[str]) -> Dict[str, int]:
        with self._lock:
            return {k: self._data[k] for k in keys if k in self._data}

    def put(self, key: str, value: int) -> None:
        self.put_many({key: value})

    def put_many(self, values: Mapping[str, int]) -> None:
        with self._lock:
            self._data.update(values)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class JsonFileStore:
    """Single JSON document on disk, rewritten whole on every write.

    Writes go to a temporary file in the same directory which is flushed,
    fsynced and then renamed over the target, so readers only ever see the
    previous or the new document.
    """

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, int]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as e:
            logger.warning("Calibration file is corrupt, treating as empty", path=str(self.path), error=str(e))
            return {}
        return {k: int(v) for k, v in data.items()} if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, int]) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def get(self, key: str) -> Optional[int]:
        with self._lock:
            return self._read().get(key)

    def get_many(self, keys: Iterable[str]) -> Dict[str, int]:
        with self._lock:
            data = self._read()
        return {k: data[k] for k in keys if k in data}

    def put(self, key: str, value: int) -> None:
        self.put_many({key: value})

    def put_many(self, values: Mapping[str, int]) -> None:
        with self._lock:
            data = self._read()
            data.update({k: int(v) for k, v in values.items()})
            self._write(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)


def build_store(settings) -> KeyValueStore:
    """Create the backend named by ``settings.CACHE_BACKEND``."""
    backend = settings.CACHE_BACKEND.lower()
    if backend == "memory":
        return MemoryStore()
    if backend == "file":
        return JsonFileStore(Path(settings.DATA_DIR) / settings.CACHE_FILE)
    if backend == "mongo":
        from .mongodb_handler import MongoKeyValueStore

        return MongoKeyValueStore.connect(settings.MONGO_URI, settings.MONGO_DB, settings.MONGO_COLLECTION)
    raise ValueError(f"Unknown cache backend: {settings.CACHE_BACKEND}")
