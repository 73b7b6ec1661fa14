"""
In-memory object storage.

Used for tests and for dry runs where nothing should touch disk or network.
"""

from __future__ import annotations

import io
import threading
from typing import BinaryIO

from tessera.storage.base import ObjectNotFoundError, ObjectStorage


class MemoryStorage(ObjectStorage):
    """ObjectStorage backed by a dict guarded by a lock."""

    driver = "memory"

    def __init__(self) -> None:
        self._objects: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, name: str, data: bytes) -> None:
        with self._lock:
            self._objects[name] = bytes(data)

    def get(self, name: str) -> bytes:
        with self._lock:
            try:
                return self._objects[name]
            except KeyError:
                raise ObjectNotFoundError(name) from None

    def open_read(self, name: str) -> BinaryIO:
        return io.BytesIO(self.get(name))

    def delete(self, name: str) -> bool:
        with self._lock:
            return self._objects.pop(name, None) is not None

    def list(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(n for n in self._objects if n.startswith(prefix))

    def size(self, name: str) -> int:
        return len(self.get(name))
