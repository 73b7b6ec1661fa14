"""
Chunked backup path: produce, upload and collate bounded chunks.

Usage:
    from tessera.chunked import ChunkChannel, ChunkProducer, UploadScheduler

    producer = ChunkProducer(chunk_size=10 * 1024 * 1024)
    channel = ChunkChannel(capacity=3)
    # producer thread: producer.stream_directory(root, ts, channel.put); channel.close()
    batch = UploadScheduler(storage).upload_chunks(channel)
"""

from tessera.chunked.collator import ChunkCollator, ChunkSequenceError, validate_sequence
from tessera.chunked.framing import (
    ChunkFramingError,
    RecordDecoder,
    encode_record,
    iter_records,
    record_header,
)
from tessera.chunked.producer import (
    Chunk,
    ChunkProducer,
    ChunkRef,
    SourceKind,
    StreamStats,
)
from tessera.chunked.scheduler import (
    ChannelClosedError,
    ChunkChannel,
    ChunkUploadFailure,
    UploadBatchResult,
    UploadResult,
    UploadScheduler,
    UploadState,
    UploadTask,
)

__all__ = [
    # Producer
    "Chunk",
    "ChunkRef",
    "ChunkProducer",
    "SourceKind",
    "StreamStats",
    # Framing
    "encode_record",
    "record_header",
    "iter_records",
    "RecordDecoder",
    # Scheduler
    "ChunkChannel",
    "UploadScheduler",
    "UploadTask",
    "UploadState",
    "UploadResult",
    "UploadBatchResult",
    # Collator
    "ChunkCollator",
    "validate_sequence",
    # Errors
    "ChunkFramingError",
    "ChunkSequenceError",
    "ChunkUploadFailure",
    "ChannelClosedError",
]
