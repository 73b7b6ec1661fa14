"""
Chunk producer for the streaming backup path.

The producer turns database dump streams and directory trees into bounded
byte chunks and hands every completed chunk to a sink immediately, so peak
memory stays at a small multiple of the chunk size.

Two framing schemes are used, selected by source kind:
    - database: the dump stream is cut into raw slices. A chunk is flushed
      once the rolling buffer reaches chunk_size.
    - directory/single file: each file is one framed record (see framing.py).
      Records are appended whole. Before the next record is appended, a
      non-empty buffer that has reached chunk_size is flushed, so the record
      that crossed the threshold stays in that chunk. chunk_size is a soft
      lower bound: chunks may be larger, and only the last one smaller.

Chunk names:
    <temp_prefix><base_name>.part<index>

Base names:
    db_<connection>_<timestamp>
    files_<directory name>_<timestamp>
    file_<file name>_<timestamp>
    manifest.json
"""

from __future__ import annotations

import hashlib
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import BinaryIO

from tessera.archive.filters import FilterChain, iter_files
from tessera.archive.manifest import MANIFEST_NAME, ManifestBuilder
from tessera.chunked.framing import encode_record
from tessera.config.settings import DEFAULT_CHUNK_SIZE
from tessera.database.dumper import DumpError, DumpSource

logger = logging.getLogger(__name__)

READ_BLOCK_SIZE = 8192
DEFAULT_TEMP_PREFIX = "tessera_chunk_"


class SourceKind(str, Enum):
    """What a chunk's bytes come from."""

    DATABASE = "database"
    DIRECTORY_FILES = "directory_files"
    SINGLE_FILE = "single_file"
    MANIFEST = "manifest"


@dataclass(frozen=True)
class ChunkRef:
    """A chunk without its payload, kept after the payload is uploaded."""

    name: str
    base_name: str
    source_kind: SourceKind
    index: int
    size: int


@dataclass
class Chunk:
    """A bounded byte unit of one logical source."""

    name: str
    base_name: str
    source_kind: SourceKind
    index: int
    payload: bytes

    @property
    def size(self) -> int:
        return len(self.payload)

    def ref(self) -> ChunkRef:
        return ChunkRef(
            name=self.name,
            base_name=self.base_name,
            source_kind=self.source_kind,
            index=self.index,
            size=len(self.payload),
        )


@dataclass(frozen=True)
class StreamStats:
    """Totals for one streamed source."""

    chunk_count: int
    size: int
    sha256: str


ChunkSink = Callable[[Chunk], None]


class ChunkProducer:
    """Streams sources into chunks and pushes them to a sink."""

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        temp_prefix: str = DEFAULT_TEMP_PREFIX,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1 byte")
        self.chunk_size = chunk_size
        self.temp_prefix = temp_prefix

    def chunk_name(self, base_name: str, index: int) -> str:
        return f"{self.temp_prefix}{base_name}.part{index}"

    def _emit(
        self,
        sink: ChunkSink,
        base_name: str,
        source_kind: SourceKind,
        index: int,
        payload: bytes,
    ) -> None:
        chunk = Chunk(
            name=self.chunk_name(base_name, index),
            base_name=base_name,
            source_kind=source_kind,
            index=index,
            payload=payload,
        )
        logger.debug(f"Produced {chunk.name} ({chunk.size:,} bytes)")
        sink(chunk)

    # -------------------------------------------------------------------------
    # Raw streams
    # -------------------------------------------------------------------------

    def stream_to_chunks(
        self,
        source: BinaryIO,
        base_name: str,
        sink: ChunkSink,
        chunk_size: int | None = None,
        source_kind: SourceKind = SourceKind.DATABASE,
    ) -> StreamStats:
        """
        Cut a byte stream into raw chunks.

        An empty stream still produces one empty chunk so the source shows up
        in the collated archive.

        Returns:
            StreamStats for the whole stream.
        """
        limit = chunk_size or self.chunk_size
        buffer = bytearray()
        sha256 = hashlib.sha256()
        total = 0
        index = 0

        while True:
            block = source.read(READ_BLOCK_SIZE)
            if not block:
                break
            buffer += block
            sha256.update(block)
            total += len(block)
            if len(buffer) >= limit:
                self._emit(sink, base_name, source_kind, index, bytes(buffer))
                buffer.clear()
                index += 1

        if buffer or index == 0:
            self._emit(sink, base_name, source_kind, index, bytes(buffer))
            index += 1

        return StreamStats(chunk_count=index, size=total, sha256=sha256.hexdigest())

    def stream_database(
        self,
        connection_name: str,
        dump_source: DumpSource,
        timestamp: str,
        sink: ChunkSink,
    ) -> StreamStats:
        """
        Stream one connection's dump.

        Raises:
            DumpError: If the dump tool fails or produces no output.
        """
        base_name = f"db_{connection_name}_{timestamp}"
        logger.info(f"Streaming database '{connection_name}' to chunks")
        with dump_source.open_stream() as stream:
            stats = self.stream_to_chunks(stream, base_name, sink)
        if stats.size == 0:
            raise DumpError("Dump stream produced no output", connection_name)
        logger.info(
            f"Database '{connection_name}' streamed: {stats.size:,} bytes "
            f"in {stats.chunk_count} chunk(s)"
        )
        return stats

    # -------------------------------------------------------------------------
    # Framed files
    # -------------------------------------------------------------------------

    def stream_directory(
        self,
        root: Path | str,
        timestamp: str,
        sink: ChunkSink,
        exclude_paths: tuple[str, ...] | list[str] = (),
        chain: FilterChain | None = None,
        manifest: ManifestBuilder | None = None,
        label: str | None = None,
    ) -> int:
        """
        Stream every file below root as framed records.

        Args:
            root: Directory to walk.
            timestamp: Run timestamp used in the base name.
            sink: Receives each completed chunk.
            exclude_paths: Paths excluded from the walk.
            chain: File filter chain.
            manifest: Registers files/<relative> with the digest of the
                bytes that were streamed.
            label: Base-name label; defaults to the directory name.

        Returns:
            Number of chunks produced.
        """
        root = Path(root)
        base_name = f"files_{label or root.name}_{timestamp}"
        buffer = bytearray()
        index = 0
        file_count = 0

        for absolute, relative in iter_files(root, exclude_paths, chain):
            with open(absolute, "rb") as f:
                content = f.read()
            record = encode_record(relative, content)

            if buffer and len(buffer) >= self.chunk_size:
                self._emit(sink, base_name, SourceKind.DIRECTORY_FILES, index, bytes(buffer))
                buffer.clear()
                index += 1

            buffer += record
            file_count += 1
            if manifest is not None:
                manifest.add_entry(f"files/{relative}", content)

        if buffer:
            self._emit(sink, base_name, SourceKind.DIRECTORY_FILES, index, bytes(buffer))
            index += 1

        logger.info(f"Directory {root} streamed: {file_count} files in {index} chunk(s)")
        return index

    def stream_file(
        self,
        path: Path | str,
        timestamp: str,
        sink: ChunkSink,
        manifest: ManifestBuilder | None = None,
    ) -> int:
        """Stream a single file as one record named after its basename."""
        name = os.path.basename(os.fspath(path))
        with open(path, "rb") as f:
            content = f.read()
        self._emit(
            sink,
            f"file_{name}_{timestamp}",
            SourceKind.SINGLE_FILE,
            0,
            encode_record(name, content),
        )
        if manifest is not None:
            manifest.add_entry(f"files/{name}", content)
        return 1

    def manifest_chunk(self, manifest_json: bytes) -> Chunk:
        """The single chunk holding the serialized manifest."""
        return Chunk(
            name=self.chunk_name(MANIFEST_NAME, 0),
            base_name=MANIFEST_NAME,
            source_kind=SourceKind.MANIFEST,
            index=0,
            payload=manifest_json,
        )
