"""
Archive writer shared by the direct and chunked backup paths.

Archives are ZIP containers. Every entry is DEFLATE-compressed on its own at
the configured level. When an EncryptionManager is supplied, every entry
(manifest.json included) is stored as an envelope-encrypted stream and its
ZIP member comment is set to ENVELOPE_MARKER so readers know to decrypt it.
"""

from __future__ import annotations

import io
import logging
import os
import zipfile
from pathlib import Path
from typing import BinaryIO

from tessera.config.settings import clamp_compression_level
from tessera.security.encryption import EncryptionManager

logger = logging.getLogger(__name__)

ENVELOPE_MARKER = b"tessera-envelope/2"
COPY_BUFFER_SIZE = 8192


class ArchiveWriteError(Exception):
    """Raised when an entry cannot be added or the archive cannot be finalized."""

    pass


class ArchiveWriter:
    """
    Writes entries into one ZIP archive.

    The writer is single-threaded: one archive handle, owned exclusively by
    the writer until close().

    Usage:
        with ArchiveWriter(path, compression_level=6) as writer:
            writer.add_file("database/app.sql", dump_path)
            writer.add_bytes("manifest.json", manifest.to_json())
    """

    def __init__(
        self,
        target: Path | str | BinaryIO,
        compression_level: int = 6,
        encryption: EncryptionManager | None = None,
    ) -> None:
        """
        Open the archive for writing.

        Args:
            target: Output path or a writable, seekable binary file object.
            compression_level: DEFLATE level, clamped to 1-9.
            encryption: Encrypt every entry when given.

        Raises:
            ArchiveWriteError: If the target cannot be opened.
        """
        self.compression_level = clamp_compression_level(compression_level)
        self.encryption = encryption
        self.entry_names: list[str] = []
        self._closed = False
        if encryption is not None:
            encryption.require_key()
        try:
            if isinstance(target, (str, Path)):
                Path(target).parent.mkdir(parents=True, exist_ok=True)
            self._zip = zipfile.ZipFile(
                target,
                "w",
                compression=zipfile.ZIP_DEFLATED,
                compresslevel=self.compression_level,
            )
        except (OSError, zipfile.BadZipFile) as e:
            raise ArchiveWriteError(f"Cannot open archive for writing: {e}") from e

    @property
    def encrypted(self) -> bool:
        return self.encryption is not None

    def __enter__(self) -> ArchiveWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
        else:
            self.abort()

    def add_file(self, name: str, path: Path | str) -> int:
        """Add a file from disk. Returns the number of plaintext bytes stored."""
        try:
            large = os.path.getsize(path) > zipfile.ZIP64_LIMIT // 2
            with open(path, "rb") as source:
                return self._write_entry(name, source, force_zip64=large)
        except OSError as e:
            raise ArchiveWriteError(f"Cannot add {name} from {path}: {e}") from e

    def add_bytes(self, name: str, data: bytes) -> int:
        """Add an in-memory entry."""
        return self._write_entry(name, io.BytesIO(data))

    def add_stream(self, name: str, stream: BinaryIO) -> int:
        """Add an entry from a readable binary stream of unknown length."""
        return self._write_entry(name, stream, force_zip64=True)

    def _write_entry(self, name: str, source: BinaryIO, force_zip64: bool = False) -> int:
        if self._closed:
            raise ArchiveWriteError(f"Cannot add {name}: archive is closed")

        try:
            with self._zip.open(name, "w", force_zip64=force_zip64) as dest:
                if self.encryption is not None:
                    written = self.encryption.encrypt_stream(source, dest)
                else:
                    written = _copy(source, dest)
            if self.encryption is not None:
                self._zip.getinfo(name).comment = ENVELOPE_MARKER
        except (OSError, ValueError, RuntimeError, zipfile.LargeZipFile) as e:
            raise ArchiveWriteError(f"Cannot add {name}: {e}") from e

        self.entry_names.append(name)
        logger.debug(f"Added {name} ({written:,} bytes)")
        return written

    def close(self) -> None:
        """
        Finalize the archive.

        Raises:
            ArchiveWriteError: If the central directory cannot be written.
        """
        if self._closed:
            return
        self._closed = True
        try:
            self._zip.close()
        except (OSError, ValueError, zipfile.LargeZipFile) as e:
            raise ArchiveWriteError(f"Cannot finalize archive: {e}") from e

    def abort(self) -> None:
        """Close the handle after a failed run without raising."""
        if self._closed:
            return
        self._closed = True
        try:
            self._zip.close()
        except (OSError, ValueError) as e:
            logger.warning(f"Error closing aborted archive: {e}")


def _copy(source: BinaryIO, dest: BinaryIO) -> int:
    written = 0
    while True:
        block = source.read(COPY_BUFFER_SIZE)
        if not block:
            return written
        dest.write(block)
        written += len(block)
