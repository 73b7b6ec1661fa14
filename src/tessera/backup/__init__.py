"""
Backup runs for Tessera.

This module wires the archive, database, chunked and storage layers into
complete backup runs and reports their outcome as structured results.

Usage:
    from tessera.backup import BackupService, ChunkedBackupService

    # Direct path: build locally, verify, upload
    result = BackupService(settings).run()

    # Chunked path: stream chunks, collate in storage
    result = ChunkedBackupService(settings).run()

    # Audit an uploaded archive
    result = IntegrityMonitor(storage, verifier).verify_remote(name)
"""

from tessera.backup.chunked import ChunkedBackupService
from tessera.backup.memory import MemoryMonitor, format_bytes, format_duration
from tessera.backup.monitor import IntegrityMonitor
from tessera.backup.results import BackupResult
from tessera.backup.service import BackupError, BackupService, validate_run_configuration

__all__ = [
    "BackupService",
    "ChunkedBackupService",
    "BackupResult",
    "BackupError",
    "IntegrityMonitor",
    "MemoryMonitor",
    "format_bytes",
    "format_duration",
    "validate_run_configuration",
]
