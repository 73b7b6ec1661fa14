"""
Chunk collator.

Reassembles uploaded chunks into the final archive. Chunks are grouped by
base name and ordered by index; every group becomes archive entries through
the same ArchiveWriter the direct path uses, so compression and encryption
are identical whichever path built the archive.

    db_<connection>_<timestamp>   -> database/<connection>.sql
    files_<label>_<timestamp>     -> files/<record path> per record
    file_<name>_<timestamp>       -> files/<record path>
    manifest.json                 -> manifest.json (always written last)
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import BinaryIO

from tessera.archive.manifest import MANIFEST_NAME
from tessera.archive.reader import IteratorStream
from tessera.archive.writer import ArchiveWriter
from tessera.chunked.framing import RecordDecoder
from tessera.chunked.producer import ChunkRef
from tessera.security.encryption import EncryptionManager
from tessera.storage.base import ObjectStorage

logger = logging.getLogger(__name__)

DATABASE_BASE_NAME = re.compile(
    r"^db_(?P<connection>.+)_(?P<timestamp>\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2})$"
)
FILE_GROUP_PREFIXES = ("files_", "file_")


class ChunkSequenceError(Exception):
    """Raised when a chunk group has a missing or duplicated index."""

    pass


def validate_sequence(refs: Iterable[ChunkRef]) -> dict[str, list[ChunkRef]]:
    """
    Group chunk refs by base name and check every group is 0..n-1.

    Groups keep the order in which their first chunk appears.

    Raises:
        ChunkSequenceError: On a gap or a duplicate index.
    """
    groups: dict[str, list[ChunkRef]] = {}
    for ref in refs:
        groups.setdefault(ref.base_name, []).append(ref)

    for base_name, group in groups.items():
        group.sort(key=lambda r: r.index)
        for expected, ref in enumerate(group):
            if ref.index < expected:
                raise ChunkSequenceError(
                    f"Duplicate chunk index {ref.index} for {base_name}"
                )
            if ref.index > expected:
                raise ChunkSequenceError(
                    f"Missing chunk index {expected} for {base_name} "
                    f"(next present index is {ref.index})"
                )
    return groups


def database_entry_name(base_name: str) -> str:
    """database/<connection>.sql for a db_ base name."""
    match = DATABASE_BASE_NAME.match(base_name)
    connection = match.group("connection") if match else base_name[len("db_") :]
    return f"database/{connection}.sql"


class ChunkCollator:
    """Builds the final archive from chunks held in storage."""

    def __init__(
        self,
        storage: ObjectStorage,
        compression_level: int = 6,
        encryption: EncryptionManager | None = None,
        strict_framing: bool = False,
    ) -> None:
        self.storage = storage
        self.compression_level = compression_level
        self.encryption = encryption
        self.strict_framing = strict_framing

    def collate(self, refs: Iterable[ChunkRef], target: Path | str | BinaryIO) -> list[str]:
        """
        Write the final archive to target.

        Returns:
            Entry names in archive order.

        Raises:
            ChunkSequenceError: If a group has gaps or duplicates, or a base
                name has no known prefix.
            ChunkFramingError: On a truncated record with strict framing.
            ArchiveWriteError: If the archive cannot be written.
            StorageError: If a chunk cannot be read back.
        """
        groups = validate_sequence(refs)
        manifest_group = groups.pop(MANIFEST_NAME, None)

        for base_name in groups:
            if not base_name.startswith(("db_", *FILE_GROUP_PREFIXES)):
                raise ChunkSequenceError(f"Unknown chunk group: {base_name}")

        with ArchiveWriter(target, self.compression_level, self.encryption) as writer:
            for base_name, group in groups.items():
                if base_name.startswith("db_"):
                    self._add_database(writer, base_name, group)
                else:
                    self._add_records(writer, base_name, group)

            if manifest_group is not None:
                payload = b"".join(self.storage.get(ref.name) for ref in manifest_group)
                writer.add_bytes(MANIFEST_NAME, payload)

            names = list(writer.entry_names)

        logger.info(f"Collated {len(names)} entries from {len(groups)} chunk groups")
        return names

    def _add_database(self, writer: ArchiveWriter, base_name: str, group: list[ChunkRef]) -> None:
        name = database_entry_name(base_name)
        stream = IteratorStream(self._iter_chunk_blocks(group))
        with stream:
            size = writer.add_stream(name, stream)
        logger.debug(f"Collated {name} from {len(group)} chunk(s), {size:,} bytes")

    def _add_records(self, writer: ArchiveWriter, base_name: str, group: list[ChunkRef]) -> None:
        decoder = RecordDecoder(strict=self.strict_framing)
        for ref in group:
            for path, content in decoder.feed(self.storage.get(ref.name)):
                writer.add_bytes(f"files/{path}", content)
        decoder.finish()
        logger.debug(
            f"Collated {decoder.records_decoded} file(s) from {base_name} "
            f"({len(group)} chunk(s))"
        )

    def _iter_chunk_blocks(self, group: list[ChunkRef]) -> Iterator[bytes]:
        # One retried get per chunk; database chunks are bounded by chunk_size
        for ref in group:
            yield self.storage.get(ref.name)
