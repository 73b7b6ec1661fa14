"""
Record framing for filesystem chunks.

Each file streamed through the chunked path is encoded as one record:

    u32be path_length | path (UTF-8) | u32be content_length | content

Records are concatenated into chunks and never split across a record
boundary inside the producer. The collator concatenates a source's chunks
and decodes the records back in order.

Database chunks carry no framing at all; they are raw slices of the dump
stream.
"""

from __future__ import annotations

import logging
import struct
from collections.abc import Iterator

logger = logging.getLogger(__name__)

_LENGTH = struct.Struct(">I")
MAX_FIELD_LENGTH = 0xFFFFFFFF


class ChunkFramingError(Exception):
    """Raised in strict mode when a framed buffer ends in a truncated record."""

    pass


def record_header(path: str, size: int) -> bytes:
    """Encode everything of a record that precedes its content."""
    encoded = path.encode("utf-8")
    if len(encoded) > MAX_FIELD_LENGTH or size > MAX_FIELD_LENGTH:
        raise ValueError(f"Record too large to frame: {path} ({size} bytes)")
    return _LENGTH.pack(len(encoded)) + encoded + _LENGTH.pack(size)


def record_size(path: str, size: int) -> int:
    """Total framed length of a record."""
    return 2 * _LENGTH.size + len(path.encode("utf-8")) + size


def encode_record(path: str, content: bytes) -> bytes:
    """Encode one (path, content) record."""
    return record_header(path, len(content)) + content


class RecordDecoder:
    """
    Incremental record decoder.

    Payloads are fed in order; every complete record is returned as soon as
    its last byte arrives, and a partial record is carried into the next
    feed. finish() reports whatever is left over.
    """

    def __init__(self, strict: bool = False) -> None:
        self.strict = strict
        self.records_decoded = 0
        self._buffer = bytearray()
        self._offset = 0
        self._stopped = False

    def feed(self, data: bytes) -> list[tuple[str, bytes]]:
        """
        Append data and decode all complete records.

        Raises:
            ChunkFramingError: In strict mode, on a path that is not UTF-8.
        """
        if self._stopped:
            return []
        self._buffer += data
        records = []
        view = memoryview(self._buffer)
        offset = 0
        total = len(view)

        try:
            while offset + _LENGTH.size <= total:
                (path_length,) = _LENGTH.unpack_from(view, offset)
                path_start = offset + _LENGTH.size
                path_end = path_start + path_length
                if path_end + _LENGTH.size > total:
                    break
                (content_length,) = _LENGTH.unpack_from(view, path_end)
                content_start = path_end + _LENGTH.size
                content_end = content_start + content_length
                if content_end > total:
                    break

                try:
                    path = bytes(view[path_start:path_end]).decode("utf-8")
                except UnicodeDecodeError as e:
                    position = self._offset + offset
                    if self.strict:
                        raise ChunkFramingError(
                            f"Invalid record path at offset {position}"
                        ) from e
                    logger.warning(f"Invalid record path at offset {position}, stopping")
                    self._stopped = True
                    break

                records.append((path, bytes(view[content_start:content_end])))
                offset = content_end
        finally:
            view.release()

        if self._stopped:
            self._buffer.clear()
        else:
            del self._buffer[:offset]
            self._offset += offset
        self.records_decoded += len(records)
        return records

    @property
    def pending(self) -> int:
        """Bytes of an incomplete record still waiting for more data."""
        return len(self._buffer)

    def finish(self) -> None:
        """
        Report a truncated trailing record.

        Raises:
            ChunkFramingError: In strict mode, when bytes are left over.
        """
        if not self._buffer:
            return
        message = (
            f"Truncated record at offset {self._offset} ({len(self._buffer)} trailing bytes)"
        )
        self._buffer.clear()
        if self.strict:
            raise ChunkFramingError(message)
        logger.warning(f"{message}, stopping")


def iter_records(buffer: bytes, strict: bool = False) -> Iterator[tuple[str, bytes]]:
    """
    Decode records from a concatenated buffer.

    Args:
        buffer: Concatenated payloads of one source's chunks.
        strict: Raise on a truncated trailing record instead of stopping.

    Yields:
        Tuples of (path, content).

    Raises:
        ChunkFramingError: In strict mode, when the buffer ends mid-record or
            a path is not valid UTF-8.
    """
    decoder = RecordDecoder(strict=strict)
    yield from decoder.feed(buffer)
    decoder.finish()
