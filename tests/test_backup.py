"""
Tests for the backup runs.

Tests cover:
- BackupService (direct path) end to end against in-memory storage
- ChunkedBackupService and its equivalence with the direct path
- IntegrityMonitor local, remote and audit verification
- MemoryMonitor checkpoints and the formatting helpers
"""

from __future__ import annotations

import io
import shutil
import sqlite3
import tempfile
import time
import unittest
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

from tessera.archive.manifest import MANIFEST_NAME, Manifest, ManifestBuilder
from tessera.archive.reader import ArchiveReader
from tessera.archive.verifier import (
    STATUS_ERROR,
    STATUS_FAILED,
    STATUS_PASSED,
    IntegrityVerifier,
    VerificationResult,
)
from tessera.archive.writer import ArchiveWriter
from tessera.backup import (
    BackupResult,
    BackupService,
    ChunkedBackupService,
    IntegrityMonitor,
    MemoryMonitor,
    format_bytes,
    format_duration,
    validate_run_configuration,
)
from tessera.chunked.scheduler import UploadState
from tessera.config.settings import (
    ConfigurationError,
    DatabaseConfig,
    DatabaseConnection,
    Settings,
    settings_from_dict,
)
from tessera.security.encryption import EncryptionManager
from tessera.storage.base import StorageError
from tessera.storage.memory import MemoryStorage

FIXED_TIME = datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)
REMOTE_NAME = "backups/backup_2024-01-02_03-04-05.zip"


class FailingPutStorage(MemoryStorage):
    """Refuses puts whose name ends with a suffix."""

    def __init__(self, suffix: str) -> None:
        super().__init__()
        self.suffix = suffix

    def put(self, name: str, data: bytes) -> None:
        if name.endswith(self.suffix):
            raise StorageError(f"refused {name}")
        super().put(name, data)


class SlowPutStorage(MemoryStorage):
    """Delays puts whose name ends with a suffix, then stores them."""

    def __init__(self, suffix: str, delay: float) -> None:
        super().__init__()
        self.suffix = suffix
        self.delay = delay

    def put(self, name: str, data: bytes) -> None:
        if name.endswith(self.suffix):
            time.sleep(self.delay)
        super().put(name, data)


class BackupTestCase(unittest.TestCase):
    """Shared fixture: a SQLite database and a small site directory."""

    def setUp(self) -> None:
        """Create the database, files and work directory."""
        self.temp_dir = Path(tempfile.mkdtemp())
        self.work_dir = self.temp_dir / "work"

        self.db_path = self.temp_dir / "app.db"
        connection = sqlite3.connect(self.db_path)
        connection.execute("CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT)")
        connection.executemany(
            "INSERT INTO users (name) VALUES (?)", [(f"user{i}",) for i in range(50)]
        )
        connection.commit()
        connection.close()

        self.site = self.temp_dir / "site"
        (self.site / "sub").mkdir(parents=True)
        (self.site / "index.html").write_bytes(b"<html>" + b"a" * 100 + b"</html>")
        (self.site / "sub" / "data.txt").write_bytes(b"b" * 150)
        (self.site / "debug.log").write_bytes(b"noise")

        self.config_file = self.temp_dir / "app.conf"
        self.config_file.write_bytes(b"key=value\n")

        self.storage = MemoryStorage()

    def tearDown(self) -> None:
        """Remove the temporary directory."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def make_settings(self, **overrides: Any) -> Settings:
        data: dict[str, Any] = {
            "storage": {"driver": "memory", "backup_path": "backups"},
            "backup": {"work_dir": str(self.work_dir)},
            "database": {
                "connections": [
                    {"name": "main", "driver": "sqlite", "database": str(self.db_path)}
                ]
            },
            "files": {"paths": [str(self.site), str(self.config_file)]},
            "filters": {"exclude_extensions": ["log"]},
            "chunked": {"chunk_size": 64},
        }
        for section, values in overrides.items():
            data[section] = {**data.get(section, {}), **values}
        return settings_from_dict(data)

    def read_archive(
        self, storage: MemoryStorage, encryption: EncryptionManager | None = None
    ) -> dict[str, bytes]:
        with ArchiveReader(storage.get(REMOTE_NAME), encryption) as reader:
            return {name: reader.read(name) for name in reader.names()}

    def expected_entries(self) -> dict[str, bytes]:
        return {
            "database/main.sql": self.db_path.read_bytes(),
            "files/index.html": (self.site / "index.html").read_bytes(),
            "files/sub/data.txt": (self.site / "sub" / "data.txt").read_bytes(),
            "files/app.conf": b"key=value\n",
        }


# -----------------------------------------------------------------------------
# Direct path
# -----------------------------------------------------------------------------


class TestBackupService(BackupTestCase):
    """Tests for BackupService."""

    def test_direct_backup(self) -> None:
        """Test a full run: dump, files, manifest, verification and upload."""
        service = BackupService(self.make_settings(), storage=self.storage, clock=lambda: FIXED_TIME)

        result = service.run()

        self.assertTrue(result.success, result.error)
        self.assertEqual(result.status, "success")
        self.assertEqual(result.archive_path, REMOTE_NAME)
        self.assertEqual(result.manifest_entry_count, 4)
        self.assertEqual(result.verification.status, STATUS_PASSED)
        self.assertEqual(result.verification.checked, 4)
        self.assertEqual(result.size_bytes, len(self.storage.get(REMOTE_NAME)))

        entries = self.read_archive(self.storage)
        manifest = entries.pop(MANIFEST_NAME)
        self.assertEqual(entries, self.expected_entries())
        self.assertIn(b'"chunked": false', manifest)

    def test_temp_files_removed(self) -> None:
        """Test that the dump and local archive are removed after the run."""
        BackupService(self.make_settings(), storage=self.storage).run()

        self.assertEqual(list(self.work_dir.iterdir()), [])

    def test_encrypted_backup(self) -> None:
        """Test that an encrypted run is readable with the master key only."""
        settings = self.make_settings(security={"encrypt_backups": True, "backup_password": "pw"})

        result = BackupService(settings, storage=self.storage, clock=lambda: FIXED_TIME).run()

        self.assertTrue(result.success, result.error)
        manager = EncryptionManager("pw")
        with ArchiveReader(self.storage.get(REMOTE_NAME), manager) as reader:
            self.assertTrue(reader.is_encrypted("database/main.sql"))
            self.assertTrue(reader.is_encrypted(MANIFEST_NAME))
            self.assertEqual(reader.read("files/app.conf"), b"key=value\n")
            self.assertTrue(reader.read_manifest().backup["encryption_enabled"])

    def test_skips_failed_connection_sequentially(self) -> None:
        """Test that a failing dump is skipped in sequential mode."""
        settings = self.make_settings(
            database={
                "connections": [
                    {"name": "main", "driver": "sqlite", "database": str(self.db_path)},
                    {"name": "ghost", "driver": "sqlite", "database": str(self.temp_dir / "no.db")},
                ]
            }
        )

        result = BackupService(settings, storage=self.storage, clock=lambda: FIXED_TIME).run()

        self.assertTrue(result.success, result.error)
        self.assertEqual(result.skipped_connections, ["ghost"])
        entries = self.read_archive(self.storage)
        self.assertIn("database/main.sql", entries)
        self.assertNotIn("database/ghost.sql", entries)

    def test_parallel_dump_failure_fails_run(self) -> None:
        """Test that a failing dump fails the run in parallel mode."""
        settings = self.make_settings(
            database={
                "parallel": True,
                "connections": [
                    {"name": "main", "driver": "sqlite", "database": str(self.db_path)},
                    {"name": "ghost", "driver": "sqlite", "database": str(self.temp_dir / "no.db")},
                ],
            }
        )

        result = BackupService(settings, storage=self.storage).run()

        self.assertFalse(result.success)
        self.assertIn("ghost", result.error)
        self.assertEqual(self.storage.list(), [])
        self.assertEqual(list(self.work_dir.iterdir()), [])

    def test_parallel_dumps(self) -> None:
        """Test that parallel mode dumps every connection."""
        other = self.temp_dir / "other.db"
        shutil.copyfile(self.db_path, other)
        settings = self.make_settings(
            database={
                "parallel": True,
                "connections": [
                    {"name": "main", "driver": "sqlite", "database": str(self.db_path)},
                    {"name": "other", "driver": "sqlite", "database": str(other)},
                ],
            }
        )

        result = BackupService(settings, storage=self.storage, clock=lambda: FIXED_TIME).run()

        self.assertTrue(result.success, result.error)
        entries = self.read_archive(self.storage)
        self.assertEqual(entries["database/other.sql"], other.read_bytes())

    def test_custom_dump_source_factory(self) -> None:
        """Test that the injected factory builds every dump source."""
        source = MagicMock()
        source.dump_to.side_effect = lambda path: Path(path).write_bytes(b"-- dump\n")
        factory = MagicMock(return_value=source)
        settings = self.make_settings(files={"paths": []})

        result = BackupService(
            settings, storage=self.storage, dump_source_factory=factory, clock=lambda: FIXED_TIME
        ).run()

        self.assertTrue(result.success, result.error)
        factory.assert_called_once_with(settings.database.connections[0], settings)
        source.validate.assert_called_once()
        self.assertEqual(self.read_archive(self.storage)["database/main.sql"], b"-- dump\n")

    def test_verification_failure_blocks_upload(self) -> None:
        """Test that a failed self-verification fails the run before upload."""
        failing = VerificationResult(
            failed=1,
            status=STATUS_FAILED,
            error_summary="Hash mismatch: files/app.conf",
            errors=["Hash mismatch: files/app.conf"],
        )
        with patch("tessera.backup.service.IntegrityVerifier") as mock_verifier:
            mock_verifier.return_value.verify.return_value = failing
            result = BackupService(self.make_settings(), storage=self.storage).run()

        self.assertFalse(result.success)
        self.assertIn("Hash mismatch", result.error)
        self.assertIs(result.verification, failing)
        self.assertEqual(self.storage.list(), [])

    def test_verification_disabled(self) -> None:
        """Test that verification can be switched off."""
        settings = self.make_settings().with_verification(False)

        result = BackupService(settings, storage=self.storage).run()

        self.assertTrue(result.success, result.error)
        self.assertIsNone(result.verification)

    def test_upload_failure_reported(self) -> None:
        """Test that an upload error is returned in the result."""
        storage = MagicMock()
        storage.put_stream.side_effect = StorageError("bucket unavailable")

        result = BackupService(self.make_settings(), storage=storage).run()

        self.assertFalse(result.success)
        self.assertEqual(result.status, "failed")
        self.assertIn("bucket unavailable", result.error)
        self.assertEqual(list(self.work_dir.iterdir()), [])

    def test_encryption_without_password(self) -> None:
        """Test that encryption without a key fails before any work."""
        settings = self.make_settings(security={"encrypt_backups": True})

        with self.assertRaises(ConfigurationError):
            BackupService(settings, storage=self.storage).run()

        self.assertFalse(self.work_dir.exists())

    def test_nothing_to_back_up(self) -> None:
        """Test that a run without targets is rejected."""
        settings = self.make_settings(database={"connections": []}, files={"paths": []})

        with self.assertRaises(ConfigurationError):
            BackupService(settings, storage=self.storage).run()


class TestValidateRunConfiguration(unittest.TestCase):
    """Tests for validate_run_configuration()."""

    def test_duplicate_connection_names(self) -> None:
        """Test that repeated connection names are rejected."""
        settings = Settings(
            database=DatabaseConfig(
                enabled=True,
                connections=(DatabaseConnection(name="a"), DatabaseConnection(name="a")),
            )
        )

        with self.assertRaises(ConfigurationError):
            validate_run_configuration(settings)

    def test_unknown_driver(self) -> None:
        """Test that an unknown driver is rejected."""
        settings = Settings(
            database=DatabaseConfig(
                enabled=True,
                connections=(DatabaseConnection(name="a", driver="oracle"),),
            )
        )

        with self.assertRaises(ConfigurationError):
            validate_run_configuration(settings)

    def test_missing_path_only_warns(self) -> None:
        """Test that a missing file path is logged, not rejected."""
        settings = settings_from_dict({"files": {"paths": ["/nonexistent/tessera/path"]}})

        with self.assertLogs("tessera.backup.service", level="WARNING") as logs:
            validate_run_configuration(settings)

        self.assertIn("does not exist", logs.output[0])

    def test_disabled_database_ignored(self) -> None:
        """Test that connections of a disabled database section do not count."""
        settings = Settings(
            database=DatabaseConfig(enabled=False, connections=(DatabaseConnection(name="a"),))
        )

        with self.assertRaises(ConfigurationError):
            validate_run_configuration(settings)


# -----------------------------------------------------------------------------
# Chunked path
# -----------------------------------------------------------------------------


class TestChunkedBackupService(BackupTestCase):
    """Tests for ChunkedBackupService."""

    def _service(self, settings: Settings, storage: MemoryStorage | None = None):
        readings = iter(range(1000, 100000, 10))
        return ChunkedBackupService(
            settings,
            storage=storage if storage is not None else self.storage,
            clock=lambda: FIXED_TIME,
            memory_monitor=MemoryMonitor(memory_reader=lambda: next(readings)),
        )

    def test_chunked_backup(self) -> None:
        """Test a full chunked run against in-memory storage."""
        result = self._service(self.make_settings()).run()

        self.assertTrue(result.success, result.error)
        self.assertEqual(result.archive_path, REMOTE_NAME)
        self.assertGreater(result.chunk_count, 4)
        self.assertEqual(result.verification.status, STATUS_PASSED)
        self.assertIn("memory_delta", result.memory_stats)
        self.assertFalse(result.uploads.failed)
        self.assertTrue(result.manifest.backup["chunked"])

    def test_chunks_deleted_after_success(self) -> None:
        """Test that only the final archive remains in storage."""
        self._service(self.make_settings()).run()

        self.assertEqual(self.storage.list(), [REMOTE_NAME])

    def test_matches_direct_path(self) -> None:
        """Test that both paths produce the same entries and manifest digests."""
        settings = self.make_settings()
        direct_storage = MemoryStorage()
        BackupService(settings, storage=direct_storage, clock=lambda: FIXED_TIME).run()

        result = self._service(settings).run()

        self.assertTrue(result.success, result.error)
        chunked_entries = self.read_archive(self.storage)
        direct_entries = self.read_archive(direct_storage)
        chunked_manifest = chunked_entries.pop(MANIFEST_NAME)
        direct_manifest = direct_entries.pop(MANIFEST_NAME)
        self.assertEqual(chunked_entries, direct_entries)
        self.assertEqual(chunked_entries, self.expected_entries())

        def digests(raw: bytes) -> set[tuple[str, int, str]]:
            return {(e.path, e.size, e.sha256) for e in Manifest.from_json(raw).entries}

        self.assertEqual(digests(chunked_manifest), digests(direct_manifest))

    def test_encrypted_chunked_backup(self) -> None:
        """Test the chunked path with encryption enabled."""
        settings = self.make_settings(security={"encrypt_backups": True, "backup_password": "pw"})

        result = self._service(settings).run()

        self.assertTrue(result.success, result.error)
        entries = self.read_archive(self.storage, EncryptionManager("pw"))
        self.assertEqual(entries["files/app.conf"], b"key=value\n")

    def test_failed_chunk_fails_run_and_cleans_up(self) -> None:
        """Test that one failed chunk upload fails the run and removes the rest."""
        storage = FailingPutStorage(".part1")

        result = self._service(self.make_settings(), storage).run()

        self.assertFalse(result.success)
        self.assertIn("chunk uploads failed", result.error)
        self.assertEqual(storage.list(), [])

    def test_timed_out_chunk_is_cleaned_up_after_it_lands(self) -> None:
        """Test that a chunk whose put finishes after its timeout is still deleted."""
        storage = SlowPutStorage("db_main_2024-01-02_03-04-05.part0", delay=0.5)
        settings = self.make_settings(chunked={"upload_timeout_seconds": 0.4})

        result = self._service(settings, storage).run()

        self.assertFalse(result.success)
        timed_out = [r for r in result.uploads.results if r.state is UploadState.TIMED_OUT]
        self.assertEqual(len(timed_out), 1)
        self.assertEqual(storage.list(), [])

    def test_dump_error_fails_run_and_cleans_up(self) -> None:
        """Test that a producer error fails the run and removes uploaded chunks."""
        settings = self.make_settings(
            database={
                "connections": [
                    {"name": "main", "driver": "sqlite", "database": str(self.db_path)},
                    {"name": "ghost", "driver": "sqlite", "database": str(self.temp_dir / "no.db")},
                ]
            }
        )

        result = self._service(settings).run()

        self.assertFalse(result.success)
        self.assertIn("ghost", result.error)
        self.assertEqual(self.storage.list(), [])

    def test_validation_runs_first(self) -> None:
        """Test that an invalid configuration raises before streaming."""
        settings = self.make_settings(security={"encrypt_backups": True})

        with self.assertRaises(ConfigurationError):
            self._service(settings).run()


# -----------------------------------------------------------------------------
# Integrity monitor
# -----------------------------------------------------------------------------


def build_archive_bytes(entries: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    builder = ManifestBuilder(Settings())
    with ArchiveWriter(buffer) as writer:
        for name, content in entries.items():
            writer.add_bytes(name, content)
            builder.add_entry(name, content)
        manifest = builder.build(chunked=False, compression_level=6, encryption_enabled=False)
        writer.add_bytes(MANIFEST_NAME, manifest.to_json())
    return buffer.getvalue()


class TestIntegrityMonitor(unittest.TestCase):
    """Tests for IntegrityMonitor."""

    def setUp(self) -> None:
        """Create a temporary directory and storage."""
        self.temp_dir = Path(tempfile.mkdtemp())
        self.storage = MemoryStorage()
        self.monitor = IntegrityMonitor(self.storage, IntegrityVerifier())

    def tearDown(self) -> None:
        """Remove the temporary directory."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_verify_local(self) -> None:
        """Test verifying an archive on disk."""
        path = self.temp_dir / "backup.zip"
        path.write_bytes(build_archive_bytes({"files/a.txt": b"alpha"}))

        result = self.monitor.verify_local(path, trigger="manual")

        self.assertEqual(result.status, STATUS_PASSED)
        self.assertEqual(result.trigger, "manual")

    def test_verify_local_missing(self) -> None:
        """Test that a missing local archive yields status error."""
        result = self.monitor.verify_local(self.temp_dir / "nope.zip")

        self.assertEqual(result.status, STATUS_ERROR)
        self.assertIn("not found", result.error_summary)

    def test_verify_remote(self) -> None:
        """Test downloading and verifying a stored archive."""
        self.storage.put("backups/b.zip", build_archive_bytes({"files/a.txt": b"alpha"}))

        result = self.monitor.verify_remote("backups/b.zip")

        self.assertEqual(result.status, STATUS_PASSED)
        self.assertEqual(result.checked, 1)
        self.assertEqual(result.trigger, "scheduled")

    def test_verify_remote_missing(self) -> None:
        """Test that a missing remote archive yields status error."""
        result = self.monitor.verify_remote("backups/missing.zip")

        self.assertEqual(result.status, STATUS_ERROR)
        self.assertIn("Archive not found", result.error_summary)

    def test_verify_remote_storage_error(self) -> None:
        """Test that a download error yields status error."""
        storage = MagicMock()
        storage.download_to.side_effect = StorageError("connection reset")

        result = IntegrityMonitor(storage).verify_remote("backups/b.zip")

        self.assertEqual(result.status, STATUS_ERROR)
        self.assertIn("connection reset", result.error_summary)

    def test_audit(self) -> None:
        """Test auditing every archive below a prefix."""
        self.storage.put("backups/good.zip", build_archive_bytes({"files/a.txt": b"alpha"}))
        self.storage.put("backups/bad.zip", b"not an archive")
        self.storage.put("backups/notes.txt", b"ignored")
        self.storage.put("other/elsewhere.zip", b"ignored")

        results = self.monitor.audit("backups")

        self.assertEqual(sorted(results), ["backups/bad.zip", "backups/good.zip"])
        self.assertEqual(results["backups/good.zip"].status, STATUS_PASSED)
        self.assertEqual(results["backups/bad.zip"].status, STATUS_ERROR)


# -----------------------------------------------------------------------------
# Memory monitor and formatting
# -----------------------------------------------------------------------------


class TestMemoryMonitor(unittest.TestCase):
    """Tests for MemoryMonitor."""

    def test_compare(self) -> None:
        """Test deltas between two checkpoints."""
        readings = iter([100, 300, 200])
        times = iter([0.0, 1.5, 2.0])
        monitor = MemoryMonitor(memory_reader=lambda: next(readings), clock=lambda: next(times))
        monitor.checkpoint("start")
        monitor.checkpoint("middle")
        monitor.checkpoint("end")

        stats = monitor.compare("start", "end")

        self.assertEqual(stats["memory_delta"], 100)
        self.assertEqual(stats["peak_delta"], 200)
        self.assertEqual(stats["time_delta"], 2.0)
        self.assertEqual(stats["formatted"]["memory_delta"], "100 B")
        self.assertEqual(stats["formatted"]["time_delta"], "2000.0ms")
        self.assertEqual(monitor.get_checkpoint("middle").peak_memory, 300)

    def test_unknown_checkpoint(self) -> None:
        """Test that comparing unknown checkpoints returns an empty dict."""
        monitor = MemoryMonitor(memory_reader=lambda: 1)
        monitor.checkpoint("start")

        self.assertEqual(monitor.compare("start", "missing"), {})
        self.assertIsNone(monitor.get_checkpoint("missing"))

    def test_reads_process_memory(self) -> None:
        """Test the default reader reports resident memory."""
        point = MemoryMonitor().checkpoint("now")

        self.assertGreater(point.memory_usage, 0)


class TestFormatting(unittest.TestCase):
    """Tests for format_bytes() and format_duration()."""

    def test_format_bytes(self) -> None:
        """Test byte formatting."""
        self.assertEqual(format_bytes(0), "0 B")
        self.assertEqual(format_bytes(512), "512 B")
        self.assertEqual(format_bytes(1536), "1.5 KB")
        self.assertEqual(format_bytes(5 * 1024 * 1024), "5 MB")
        self.assertEqual(format_bytes(-2048), "-2 KB")

    def test_format_duration(self) -> None:
        """Test duration formatting."""
        self.assertEqual(format_duration(45), "45s")
        self.assertEqual(format_duration(120), "2m")
        self.assertEqual(format_duration(65), "1m 5s")
        self.assertEqual(format_duration(3600), "1h")
        self.assertEqual(format_duration(3725), "1h 2m")
        self.assertEqual(format_duration(90000), "1d 1h")


class TestBackupResult(unittest.TestCase):
    """Tests for BackupResult."""

    def test_failure(self) -> None:
        """Test the failure constructor and its JSON form."""
        result = BackupResult.failure("boom", skipped_connections=["x"])
        data = result.to_dict()

        self.assertFalse(result.success)
        self.assertEqual(data["status"], "failed")
        self.assertEqual(data["error"], "boom")
        self.assertEqual(data["skipped_connections"], ["x"])
        self.assertIsNone(data["verification"])


if __name__ == "__main__":
    unittest.main()
