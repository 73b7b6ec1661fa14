"""
Object storage abstraction for Tessera.

Every component that uploads, downloads, lists or deletes archives and
chunks talks to an ObjectStorage. Implementations must be safe for
concurrent use because the upload scheduler calls them from several
threads at once.

Names are slash-separated keys ("backups/backup_2024-01-01_00-00-00.zip").
"""

from __future__ import annotations

import shutil
from abc import ABC, abstractmethod
from contextlib import closing
from typing import BinaryIO

COPY_BUFFER_SIZE = 8192


# -----------------------------------------------------------------------------
# Error Classes
# -----------------------------------------------------------------------------


class StorageError(Exception):
    """Base exception for storage errors."""

    pass


class StorageTransientError(StorageError):
    """
    Raised for failures that may succeed when retried.

    This includes network errors, throttling and server-side 5xx errors.
    """

    pass


class ObjectNotFoundError(StorageError):
    """Raised when a named object does not exist. Never retried."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Object not found: {name}")


# -----------------------------------------------------------------------------
# Storage Interface
# -----------------------------------------------------------------------------


class ObjectStorage(ABC):
    """Abstract object store used for archives and chunks."""

    driver: str = "base"

    @abstractmethod
    def put(self, name: str, data: bytes) -> None:
        """Store bytes under name, replacing any existing object."""

    def put_stream(self, name: str, stream: BinaryIO) -> None:
        """Store the remaining contents of a binary stream under name."""
        self.put(name, stream.read())

    @abstractmethod
    def get(self, name: str) -> bytes:
        """Return the full contents of an object."""

    @abstractmethod
    def open_read(self, name: str) -> BinaryIO:
        """Open an object for streaming reads. Caller closes the stream."""

    @abstractmethod
    def delete(self, name: str) -> bool:
        """Delete an object. Returns False if it did not exist."""

    @abstractmethod
    def list(self, prefix: str = "") -> list[str]:
        """List object names starting with prefix, sorted."""

    @abstractmethod
    def size(self, name: str) -> int:
        """Return the size of an object in bytes."""

    def exists(self, name: str) -> bool:
        """Check whether an object exists."""
        try:
            self.size(name)
        except ObjectNotFoundError:
            return False
        return True

    def download_to(self, name: str, target: BinaryIO) -> int:
        """Copy an object into a writable binary stream. Returns bytes copied."""
        written = 0
        with closing(self.open_read(name)) as source:
            while True:
                block = source.read(COPY_BUFFER_SIZE)
                if not block:
                    break
                target.write(block)
                written += len(block)
        return written


def copy_stream(source: BinaryIO, target: BinaryIO) -> None:
    """Copy one binary stream into another in fixed-size blocks."""
    shutil.copyfileobj(source, target, COPY_BUFFER_SIZE)
