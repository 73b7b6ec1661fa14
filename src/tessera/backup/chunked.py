"""
Chunked (streaming) backup path.

A producer thread streams every database dump and file tree into bounded
chunks and pushes them into a ChunkChannel; the upload scheduler consumes
the channel on the calling thread. Once every chunk is in storage, the
manifest is uploaded as one more chunk, the collator rebuilds the final
archive from storage, and the chunks are deleted.

A run never commits a partial backup: one failed chunk, a producer error or
a failed self-verification fails the whole run, and every chunk already in
storage is deleted on a best-effort basis.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
import time
from collections.abc import Callable
from contextlib import nullcontext
from datetime import UTC, datetime
from pathlib import Path

from tessera.archive.filters import FilterChain, should_exclude_path
from tessera.archive.manifest import ManifestBuilder
from tessera.archive.verifier import IntegrityVerifier, VerificationResult
from tessera.backup.memory import MemoryMonitor, format_bytes
from tessera.backup.results import STATUS_SUCCESS, BackupResult
from tessera.backup.service import (
    BackupError,
    DumpSourceFactory,
    archive_name,
    database_targets,
    file_targets,
    remote_archive_name,
    resolve_encryption,
    run_timestamp,
    validate_run_configuration,
)
from tessera.chunked.collator import ChunkCollator
from tessera.chunked.producer import ChunkProducer, ChunkRef, ChunkSink
from tessera.chunked.scheduler import (
    ChunkChannel,
    ChunkUploadFailure,
    UploadBatchResult,
    UploadScheduler,
    UploadState,
)
from tessera.config.settings import Settings
from tessera.database.dumper import create_dump_source
from tessera.security.encryption import EncryptionManager
from tessera.storage import create_storage
from tessera.storage.base import ObjectStorage

logger = logging.getLogger(__name__)

# Final archives larger than this are spooled to disk during collation
ARCHIVE_SPOOL_MAX_SIZE = 64 * 1024 * 1024


class ChunkedBackupService:
    """
    Runs the chunked backup path.

    Usage:
        result = ChunkedBackupService(settings).run()
        print(result.chunk_count, result.memory_stats)
    """

    def __init__(
        self,
        settings: Settings,
        storage: ObjectStorage | None = None,
        dump_source_factory: DumpSourceFactory | None = None,
        encryption: EncryptionManager | None = None,
        clock: Callable[[], datetime] | None = None,
        memory_monitor: MemoryMonitor | None = None,
    ) -> None:
        self.settings = settings
        self.storage = storage if storage is not None else create_storage(settings)
        self.dump_source_factory = dump_source_factory or create_dump_source
        self.encryption = resolve_encryption(settings, encryption)
        self._clock = clock or (lambda: datetime.now(UTC))
        self.memory_monitor = memory_monitor or MemoryMonitor()
        self.producer = ChunkProducer(
            chunk_size=settings.chunked.chunk_size,
            temp_prefix=settings.chunked.temp_prefix,
        )

    def run(self) -> BackupResult:
        """
        Run one chunked backup.

        Returns:
            BackupResult with chunk_count and memory_stats.

        Raises:
            ConfigurationError: If the run configuration is invalid.
        """
        validate_run_configuration(self.settings, self.encryption)

        settings = self.settings
        monitor = self.memory_monitor
        monitor.checkpoint("backup_start")
        started = time.monotonic()
        timestamp = run_timestamp(self._clock())
        builder = ManifestBuilder(settings, clock=self._clock)
        scheduler = UploadScheduler(
            self.storage,
            max_concurrent=settings.chunked.max_concurrent_uploads,
            timeout_seconds=settings.chunked.upload_timeout_seconds,
        )
        committed: list[ChunkRef] = []
        batch: UploadBatchResult | None = None
        verification = None

        logger.info(f"Starting chunked backup {archive_name(timestamp)}")
        try:
            batch = self._upload_sources(scheduler, timestamp, builder)
            monitor.checkpoint("after_upload")
            committed = [result.ref for result in batch.results if result.success]

            if batch.failed:
                raise ChunkUploadFailure(
                    f"{batch.failed_count} of {batch.total} chunk uploads failed "
                    f"({batch.failure_rate:.0%})",
                    batch,
                )
            if batch.failed_count:
                raise ChunkUploadFailure(
                    f"{batch.failed_count} of {batch.total} chunk uploads failed; "
                    f"refusing to build an incomplete backup",
                    batch,
                )

            manifest = builder.build(
                chunked=True,
                compression_level=settings.backup.compression_level,
                encryption_enabled=self.encryption is not None,
            )
            manifest_chunk = self.producer.manifest_chunk(manifest.to_json())
            self.storage.put(manifest_chunk.name, manifest_chunk.payload)
            committed.append(manifest_chunk.ref())

            remote_name = remote_archive_name(settings, archive_name(timestamp))
            size, verification = self._collate_and_upload(committed, remote_name)
            monitor.checkpoint("after_collation")

            self._delete_chunks(committed)
            monitor.checkpoint("backup_end")
            memory_stats = monitor.compare("backup_start", "after_collation")
            duration = round(time.monotonic() - started, 2)
            logger.info(
                f"Chunked backup completed: {remote_name} ({format_bytes(size)}, "
                f"{len(committed)} chunks) in {duration}s"
            )
            return BackupResult(
                success=True,
                status=STATUS_SUCCESS,
                archive_path=remote_name,
                size_bytes=size,
                manifest_entry_count=manifest.entry_count,
                manifest=manifest,
                verification=verification,
                chunk_count=len(committed),
                memory_stats=memory_stats,
                uploads=batch,
                duration_seconds=duration,
            )

        except Exception as e:
            logger.exception("Chunked backup failed")
            scheduler.wait_for_timed_out()
            self._delete_chunks(self._chunks_to_clean(scheduler, committed))
            monitor.checkpoint("backup_end")
            return BackupResult.failure(
                str(e),
                verification=verification,
                chunk_count=len(scheduler.successful_uploads()),
                memory_stats=monitor.compare("backup_start", "backup_end"),
                uploads=batch,
                duration_seconds=round(time.monotonic() - started, 2),
            )

    # -------------------------------------------------------------------------
    # Produce and upload
    # -------------------------------------------------------------------------

    def _upload_sources(
        self,
        scheduler: UploadScheduler,
        timestamp: str,
        builder: ManifestBuilder,
    ) -> UploadBatchResult:
        channel = ChunkChannel(capacity=self.settings.chunked.max_concurrent_uploads)
        thread = threading.Thread(
            target=self._produce,
            args=(channel, timestamp, builder),
            name="tessera-producer",
            daemon=True,
        )
        thread.start()
        try:
            return scheduler.upload_chunks(channel)
        finally:
            channel.cancel()
            thread.join()

    def _produce(self, channel: ChunkChannel, timestamp: str, builder: ManifestBuilder) -> None:
        error: Exception | None = None
        try:
            self.produce_chunks(channel.put, timestamp, builder)
        except Exception as e:
            error = e
        finally:
            channel.close(error)

    def produce_chunks(self, sink: ChunkSink, timestamp: str, builder: ManifestBuilder) -> None:
        """
        Stream every configured source into sink.

        Registers each logical entry with the manifest builder.

        Raises:
            DumpError: If a database dump fails.
        """
        for connection in database_targets(self.settings):
            source = self.dump_source_factory(connection, self.settings)
            stats = self.producer.stream_database(connection.name, source, timestamp, sink)
            builder.add_digest(f"database/{connection.name}.sql", stats.size, stats.sha256)

        paths = file_targets(self.settings)
        if not paths:
            return

        exclude_paths = self.settings.files.exclude_paths
        chain = FilterChain.from_settings(self.settings)
        labels: dict[str, int] = {}

        for raw_path in paths:
            path = Path(raw_path).expanduser()
            if path.is_dir():
                name = path.resolve().name or "root"
                labels[name] = labels.get(name, 0) + 1
                label = name if labels[name] == 1 else f"{name}-{labels[name]}"
                self.producer.stream_directory(
                    path,
                    timestamp,
                    sink,
                    exclude_paths=exclude_paths,
                    chain=chain,
                    manifest=builder,
                    label=label,
                )
            elif path.is_file():
                absolute = os.path.abspath(path)
                if should_exclude_path(absolute, exclude_paths) or not chain.should_include(
                    absolute
                ):
                    logger.debug(f"Skipping filtered file {path}")
                    continue
                self.producer.stream_file(path, timestamp, sink, manifest=builder)
            else:
                logger.warning(f"Backup path does not exist: {path}")

    # -------------------------------------------------------------------------
    # Collate
    # -------------------------------------------------------------------------

    def _collate_and_upload(
        self,
        refs: list[ChunkRef],
        remote_name: str,
    ) -> tuple[int, VerificationResult | None]:
        settings = self.settings
        collator = ChunkCollator(
            self.storage,
            compression_level=settings.backup.compression_level,
            encryption=self.encryption,
            strict_framing=settings.chunked.strict_framing,
        )
        session = self.encryption.session() if self.encryption else nullcontext()
        verification = None

        with tempfile.SpooledTemporaryFile(max_size=ARCHIVE_SPOOL_MAX_SIZE) as spool:
            with session:
                collator.collate(refs, spool)

            if settings.backup.verify:
                spool.seek(0)
                verifier = IntegrityVerifier(self.encryption)
                verification = verifier.verify(spool, trigger="post_build")
                if not verification.passed:
                    raise BackupError(
                        f"Backup verification failed: {verification.error_summary}"
                    )

            size = spool.seek(0, os.SEEK_END)
            spool.seek(0)
            logger.info(f"Uploading {remote_name} ({size:,} bytes)")
            self.storage.put_stream(remote_name, spool)

        return size, verification

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    @staticmethod
    def _chunks_to_clean(scheduler: UploadScheduler, committed: list[ChunkRef]) -> list[ChunkRef]:
        """Chunks confirmed in storage plus timed-out ones that may still land."""
        refs = {ref.name: ref for ref in committed}
        for result in scheduler.successful_uploads():
            refs.setdefault(result.ref.name, result.ref)
        for result in scheduler.failed_uploads():
            if result.state is UploadState.TIMED_OUT:
                refs.setdefault(result.ref.name, result.ref)
        return list(refs.values())

    def _delete_chunks(self, refs: list[ChunkRef]) -> None:
        """Delete chunks from storage; failures are logged, never raised."""
        deleted = 0
        for ref in refs:
            try:
                if self.storage.delete(ref.name):
                    deleted += 1
            except Exception as e:
                logger.warning(f"Failed to delete chunk {ref.name}: {e}")
        if refs:
            logger.info(f"Removed {deleted} of {len(refs)} chunk(s) from storage")
