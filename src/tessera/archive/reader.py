"""
Archive reader.

Opens archives produced by ArchiveWriter, transparently decrypting entries
whose member comment carries the envelope marker.
"""

from __future__ import annotations

import io
import logging
import shutil
import zipfile
from collections.abc import Iterator
from pathlib import Path
from typing import BinaryIO

from tessera.archive.manifest import MANIFEST_NAME, ArchiveCorruptionError, Manifest
from tessera.archive.writer import COPY_BUFFER_SIZE, ENVELOPE_MARKER
from tessera.security.encryption import EncryptionError, EncryptionManager

logger = logging.getLogger(__name__)


class IteratorStream(io.RawIOBase):
    """Read-only binary stream over an iterator of byte blocks."""

    def __init__(self, blocks: Iterator[bytes], on_close=None) -> None:
        self._blocks = blocks
        self._buffer = b""
        self._offset = 0
        self._on_close = on_close

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        while self._offset >= len(self._buffer):
            try:
                self._buffer = next(self._blocks)
            except StopIteration:
                return 0
            self._offset = 0
        n = min(len(b), len(self._buffer) - self._offset)
        b[:n] = self._buffer[self._offset : self._offset + n]
        self._offset += n
        return n

    def close(self) -> None:
        if not self.closed and self._on_close is not None:
            self._on_close()
        super().close()


class ArchiveReader:
    """
    Reads entries from a Tessera archive.

    Args:
        source: Archive bytes, a path, or a seekable binary file object.
        encryption: Needed to read encrypted entries.

    Raises:
        ArchiveCorruptionError: If the source is not a readable ZIP archive.
    """

    def __init__(
        self,
        source: bytes | Path | str | BinaryIO,
        encryption: EncryptionManager | None = None,
    ) -> None:
        self.encryption = encryption
        if isinstance(source, (bytes, bytearray)):
            source = io.BytesIO(source)
        try:
            self._zip = zipfile.ZipFile(source, "r")
        except (zipfile.BadZipFile, OSError, ValueError) as e:
            raise ArchiveCorruptionError(f"Not a readable archive: {e}") from e

    def __enter__(self) -> ArchiveReader:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._zip.close()

    def names(self) -> list[str]:
        return [info.filename for info in self._zip.infolist() if not info.is_dir()]

    def __contains__(self, name: str) -> bool:
        try:
            self._zip.getinfo(name)
        except KeyError:
            return False
        return True

    def is_encrypted(self, name: str) -> bool:
        return self._zip.getinfo(name).comment == ENVELOPE_MARKER

    def stored_size(self, name: str) -> int:
        """Uncompressed size of the stored member (ciphertext size when encrypted)."""
        return self._zip.getinfo(name).file_size

    def open_entry(self, name: str) -> BinaryIO:
        """
        Open an entry as a plaintext stream.

        Raises:
            KeyError: If the entry does not exist.
            EncryptionError: If the entry is encrypted and no key is available.
        """
        info = self._zip.getinfo(name)
        raw = self._zip.open(info, "r")
        if info.comment != ENVELOPE_MARKER:
            return raw

        if self.encryption is None:
            raw.close()
            raise EncryptionError(
                f"Entry {name} is encrypted but no encryption key is configured"
            )
        blocks = self.encryption.iter_decrypt(raw)
        return io.BufferedReader(IteratorStream(blocks, on_close=raw.close))

    def read(self, name: str) -> bytes:
        """Read a whole entry as plaintext."""
        with self.open_entry(name) as stream:
            return stream.read()

    def read_manifest(self) -> Manifest:
        """
        Read and parse manifest.json.

        Raises:
            ArchiveCorruptionError: If the manifest is missing or invalid.
        """
        if MANIFEST_NAME not in self:
            raise ArchiveCorruptionError("Archive has no manifest.json")
        return Manifest.from_json(self.read(MANIFEST_NAME))

    def extract_to(self, directory: Path | str) -> list[Path]:
        """
        Extract every entry below directory, decrypting as needed.

        Raises:
            ArchiveCorruptionError: If an entry name would escape directory.
        """
        root = Path(directory).resolve()
        root.mkdir(parents=True, exist_ok=True)
        extracted = []

        for name in self.names():
            target = (root / name).resolve()
            if root not in target.parents:
                raise ArchiveCorruptionError(f"Unsafe entry path in archive: {name}")
            target.parent.mkdir(parents=True, exist_ok=True)
            with self.open_entry(name) as source, open(target, "wb") as dest:
                shutil.copyfileobj(source, dest, COPY_BUFFER_SIZE)
            extracted.append(target)

        logger.info(f"Extracted {len(extracted)} entries to {root}")
        return extracted
