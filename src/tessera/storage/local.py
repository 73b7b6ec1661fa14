"""
Filesystem-backed object storage.

Objects are plain files below a root directory. Writes go to a temp file in
the destination directory and are renamed into place, so a reader never
sees a half-written object.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import BinaryIO

from tessera.storage.base import (
    ObjectNotFoundError,
    ObjectStorage,
    StorageError,
    copy_stream,
)

logger = logging.getLogger(__name__)


class LocalStorage(ObjectStorage):
    """
    ObjectStorage rooted at a local directory.

    Thread Safety:
        Each write uses its own temp file and os.replace, which is atomic on
        POSIX filesystems, so concurrent puts of different names are safe.
    """

    driver = "local"

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, name: str) -> Path:
        """Map an object name to a path, rejecting names outside root."""
        if not name or name.startswith("/"):
            raise StorageError(f"Invalid object name: {name!r}")
        path = (self.root / name).resolve()
        if path != self.root and self.root not in path.parents:
            raise StorageError(f"Object name escapes storage root: {name!r}")
        return path

    def _write_atomic(self, path: Path, writer) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(prefix=".tmp-", dir=str(path.parent))
        try:
            with os.fdopen(temp_fd, "wb") as f:
                writer(f)
            os.replace(temp_path, path)
        except Exception:
            # Clean up temp file on error
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    def put(self, name: str, data: bytes) -> None:
        path = self._resolve(name)
        self._write_atomic(path, lambda f: f.write(data))
        logger.debug(f"Stored {name} ({len(data):,} bytes)")

    def put_stream(self, name: str, stream: BinaryIO) -> None:
        path = self._resolve(name)
        self._write_atomic(path, lambda f: copy_stream(stream, f))
        logger.debug(f"Stored {name} from stream")

    def get(self, name: str) -> bytes:
        path = self._resolve(name)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise ObjectNotFoundError(name) from e

    def open_read(self, name: str) -> BinaryIO:
        path = self._resolve(name)
        try:
            return open(path, "rb")
        except FileNotFoundError as e:
            raise ObjectNotFoundError(name) from e

    def delete(self, name: str) -> bool:
        path = self._resolve(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def list(self, prefix: str = "") -> list[str]:
        names = []
        for path in self.root.rglob("*"):
            if not path.is_file() or path.name.startswith(".tmp-"):
                continue
            name = path.relative_to(self.root).as_posix()
            if name.startswith(prefix):
                names.append(name)
        return sorted(names)

    def size(self, name: str) -> int:
        path = self._resolve(name)
        try:
            return path.stat().st_size
        except FileNotFoundError as e:
            raise ObjectNotFoundError(name) from e
