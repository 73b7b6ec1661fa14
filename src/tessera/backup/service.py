"""
Direct backup path.

Builds one archive in the local work directory, verifies it, and uploads it
to storage:

    1. validate the run configuration (before any I/O)
    2. dump every database connection into a temp file and add it
    3. add every configured file path
    4. add manifest.json and finalize the archive
    5. optional self-verification
    6. upload as <backup_path>/backup_<timestamp>.zip
    7. remove temp dumps and the local archive
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from datetime import UTC, datetime
from pathlib import Path

from tessera.archive.filters import FilterChain, iter_files, should_exclude_path
from tessera.archive.manifest import MANIFEST_NAME, Manifest, ManifestBuilder
from tessera.archive.verifier import IntegrityVerifier
from tessera.archive.writer import ArchiveWriter
from tessera.backup.results import STATUS_SUCCESS, BackupResult
from tessera.config.settings import ConfigurationError, DatabaseConnection, Settings
from tessera.database.dumper import DatabaseDriver, DumpError, DumpSource, create_dump_source
from tessera.security.encryption import EncryptionManager
from tessera.storage import create_storage
from tessera.storage.base import ObjectStorage

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"

DumpSourceFactory = Callable[[DatabaseConnection, Settings], DumpSource]


class BackupError(Exception):
    """Error during a backup run."""

    pass


def run_timestamp(moment: datetime) -> str:
    """Timestamp used in archive, dump and chunk names."""
    return moment.strftime(TIMESTAMP_FORMAT)


def archive_name(timestamp: str) -> str:
    return f"backup_{timestamp}.zip"


def remote_archive_name(settings: Settings, name: str) -> str:
    """Storage key of an archive below the configured backup path."""
    prefix = settings.storage.backup_path.strip("/")
    return f"{prefix}/{name}" if prefix else name


def database_targets(settings: Settings) -> tuple[DatabaseConnection, ...]:
    return settings.database.connections if settings.database.enabled else ()


def file_targets(settings: Settings) -> tuple[str, ...]:
    return settings.files.paths if settings.files.enabled else ()


def validate_run_configuration(
    settings: Settings,
    encryption: EncryptionManager | None = None,
) -> None:
    """
    Check that a run can start.

    Raises:
        ConfigurationError: If nothing is enabled, a connection driver is
            unknown, connection names repeat, or encryption is requested
            without a master key.
    """
    connections = database_targets(settings)
    paths = file_targets(settings)

    if not connections and not paths:
        raise ConfigurationError(
            "Nothing to back up: enable database connections or configure files.paths"
        )

    seen: set[str] = set()
    for connection in connections:
        DatabaseDriver.parse(connection.driver)
        if connection.name in seen:
            raise ConfigurationError(f"Duplicate database connection name: {connection.name}")
        seen.add(connection.name)

    for path in paths:
        if not os.path.exists(os.path.expanduser(path)):
            logger.warning(f"Backup path does not exist: {path}")

    if settings.encryption_enabled and (encryption is None or not encryption.has_key):
        raise ConfigurationError(
            "Encryption is enabled but no backup password is configured. "
            "Set TESSERA_BACKUP_PASSWORD."
        )


def resolve_encryption(
    settings: Settings,
    encryption: EncryptionManager | None,
) -> EncryptionManager | None:
    """The encryption manager for a run, or None when encryption is off."""
    if not settings.encryption_enabled:
        return None
    return encryption or EncryptionManager.from_settings(settings)


class BackupService:
    """
    Runs the direct backup path.

    Usage:
        result = BackupService(settings).run()
        if not result.success:
            print(result.error)
    """

    def __init__(
        self,
        settings: Settings,
        storage: ObjectStorage | None = None,
        dump_source_factory: DumpSourceFactory | None = None,
        encryption: EncryptionManager | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize the service.

        Args:
            settings: Run configuration.
            storage: Upload target; defaults to create_storage(settings).
            dump_source_factory: Builds the dump source of a connection.
            encryption: Used when settings enable encryption; built from
                settings when omitted.
            clock: Returns the current time (UTC).
        """
        self.settings = settings
        self.storage = storage if storage is not None else create_storage(settings)
        self.dump_source_factory = dump_source_factory or create_dump_source
        self.encryption = resolve_encryption(settings, encryption)
        self._clock = clock or (lambda: datetime.now(UTC))

    def run(self) -> BackupResult:
        """
        Run one backup.

        Returns:
            BackupResult. Failures after validation are reported in the
            result, never raised.

        Raises:
            ConfigurationError: If the run configuration is invalid.
        """
        validate_run_configuration(self.settings, self.encryption)

        started = time.monotonic()
        timestamp = run_timestamp(self._clock())
        work_dir = Path(self.settings.backup.work_dir).expanduser()
        local_archive = work_dir / archive_name(timestamp)
        temp_files: list[Path] = []
        skipped: list[str] = []
        verification = None

        logger.info(f"Starting backup {local_archive.name}")
        try:
            manifest = self._create_archive(local_archive, timestamp, temp_files, skipped)

            if self.settings.backup.verify:
                verifier = IntegrityVerifier(self.encryption)
                verification = verifier.verify(local_archive, trigger="post_build")
                if not verification.passed:
                    raise BackupError(
                        f"Backup verification failed: {verification.error_summary}"
                    )

            size = local_archive.stat().st_size
            remote_name = remote_archive_name(self.settings, local_archive.name)
            logger.info(f"Uploading {remote_name} ({size:,} bytes)")
            with open(local_archive, "rb") as f:
                self.storage.put_stream(remote_name, f)

            duration = round(time.monotonic() - started, 2)
            logger.info(f"Backup completed: {remote_name} in {duration}s")
            return BackupResult(
                success=True,
                status=STATUS_SUCCESS,
                archive_path=remote_name,
                size_bytes=size,
                manifest_entry_count=manifest.entry_count,
                manifest=manifest,
                verification=verification,
                skipped_connections=skipped,
                duration_seconds=duration,
            )

        except Exception as e:
            logger.exception("Backup failed")
            return BackupResult.failure(
                str(e),
                verification=verification,
                skipped_connections=skipped,
                duration_seconds=round(time.monotonic() - started, 2),
            )

        finally:
            _remove_files([*temp_files, local_archive])

    # -------------------------------------------------------------------------
    # Archive construction
    # -------------------------------------------------------------------------

    def _create_archive(
        self,
        path: Path,
        timestamp: str,
        temp_files: list[Path],
        skipped: list[str],
    ) -> Manifest:
        settings = self.settings
        builder = ManifestBuilder(settings, clock=self._clock)
        session = self.encryption.session() if self.encryption else nullcontext()

        with session, ArchiveWriter(
            path, settings.backup.compression_level, self.encryption
        ) as writer:
            connections = database_targets(settings)
            if connections:
                logger.info(f"Adding {len(connections)} database(s)")
                dumps = self._dump_databases(connections, path.parent, timestamp, temp_files)
                for connection in connections:
                    dump_path = dumps.get(connection.name)
                    if dump_path is None:
                        skipped.append(connection.name)
                        continue
                    entry = f"database/{connection.name}.sql"
                    writer.add_file(entry, dump_path)
                    builder.add_entry(entry, dump_path)

            paths = file_targets(settings)
            if paths:
                logger.info(f"Adding {len(paths)} file path(s)")
                self._add_files(writer, builder, paths)

            manifest = builder.build(
                chunked=False,
                compression_level=writer.compression_level,
                encryption_enabled=self.encryption is not None,
            )
            writer.add_bytes(MANIFEST_NAME, manifest.to_json())

        logger.info(f"Archive finalized: {path} ({manifest.entry_count} entries)")
        return manifest

    def _dump_databases(
        self,
        connections: tuple[DatabaseConnection, ...],
        work_dir: Path,
        timestamp: str,
        temp_files: list[Path],
    ) -> dict[str, Path]:
        """
        Dump every connection to a temp file.

        Sequential mode skips a connection whose dump fails; parallel mode
        fails the run on the first DumpError.
        """
        work_dir.mkdir(parents=True, exist_ok=True)
        targets = {c.name: work_dir / f"db_{c.name}_{timestamp}.sql" for c in connections}
        temp_files.extend(targets.values())

        if self.settings.database.parallel and len(connections) > 1:
            logger.info("Dumping databases in parallel")
            with ThreadPoolExecutor(
                max_workers=len(connections), thread_name_prefix="tessera-dump"
            ) as pool:
                futures = {
                    c.name: pool.submit(self._dump_one, c, targets[c.name]) for c in connections
                }
                for future in futures.values():
                    future.result()
            return targets

        dumps = {}
        for connection in connections:
            try:
                self._dump_one(connection, targets[connection.name])
            except DumpError as e:
                logger.error(f"Skipping database '{connection.name}': {e}")
                continue
            dumps[connection.name] = targets[connection.name]
        return dumps

    def _dump_one(self, connection: DatabaseConnection, path: Path) -> None:
        source = self.dump_source_factory(connection, self.settings)
        source.dump_to(path)
        source.validate(path)
        logger.info(f"Dumped '{connection.name}' ({path.stat().st_size:,} bytes)")

    def _add_files(
        self,
        writer: ArchiveWriter,
        builder: ManifestBuilder,
        paths: tuple[str, ...],
    ) -> None:
        exclude_paths = self.settings.files.exclude_paths
        chain = FilterChain.from_settings(self.settings)

        for raw_path in paths:
            path = Path(raw_path).expanduser()
            if path.is_dir():
                count = 0
                for absolute, relative in iter_files(path, exclude_paths, chain):
                    entry = f"files/{relative}"
                    writer.add_file(entry, absolute)
                    builder.add_entry(entry, absolute)
                    count += 1
                logger.info(f"Added {count} files from {path}")
            elif path.is_file():
                absolute = os.path.abspath(path)
                if should_exclude_path(absolute, exclude_paths) or not chain.should_include(
                    absolute
                ):
                    logger.debug(f"Skipping filtered file {path}")
                    continue
                entry = f"files/{path.name}"
                writer.add_file(entry, path)
                builder.add_entry(entry, path)
            else:
                logger.warning(f"Backup path does not exist: {path}")


def _remove_files(paths: list[Path]) -> None:
    for path in paths:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove temporary file {path}: {e}")
