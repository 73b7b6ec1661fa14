"""
Integrity monitor.

Runs the Integrity Verifier against a local archive right after a build and
against archives already uploaded to storage (the scheduled audit). Remote
archives are downloaded through the storage's retry layer into a temporary
file first.
"""

from __future__ import annotations

import logging
import tempfile
import time
from pathlib import Path

from tessera.archive.verifier import STATUS_ERROR, IntegrityVerifier, VerificationResult
from tessera.storage.base import ObjectNotFoundError, ObjectStorage, StorageError

logger = logging.getLogger(__name__)

# Downloads larger than this are spooled to disk
DOWNLOAD_SPOOL_MAX_SIZE = 32 * 1024 * 1024


class IntegrityMonitor:
    """
    Verifies local and remote archives.

    Usage:
        monitor = IntegrityMonitor(storage, IntegrityVerifier(encryption))
        result = monitor.verify_remote("backups/backup_2024-01-01_00-00-00.zip")
    """

    def __init__(self, storage: ObjectStorage, verifier: IntegrityVerifier | None = None) -> None:
        self.storage = storage
        self.verifier = verifier or IntegrityVerifier()

    def verify_local(self, path: Path | str, trigger: str = "post_build") -> VerificationResult:
        """Verify an archive on the local filesystem."""
        path = Path(path)
        if not path.is_file():
            return _error_result(f"Archive not found: {path}", trigger)
        return self.verifier.verify(path, trigger=trigger)

    def verify_remote(self, name: str, trigger: str = "scheduled") -> VerificationResult:
        """
        Download an archive from storage and verify it.

        A missing or unreadable remote archive yields a result with status
        "error"; nothing is raised.
        """
        start = time.monotonic()
        with tempfile.SpooledTemporaryFile(max_size=DOWNLOAD_SPOOL_MAX_SIZE) as spool:
            try:
                size = self.storage.download_to(name, spool)
            except ObjectNotFoundError:
                logger.error(f"Remote archive not found: {name}")
                return _error_result(f"Archive not found: {name}", trigger, start)
            except StorageError as e:
                logger.error(f"Cannot download {name}: {e}")
                return _error_result(f"Cannot download {name}: {e}", trigger, start)

            logger.info(f"Downloaded {name} ({size:,} bytes), verifying")
            spool.seek(0)
            return self.verifier.verify(spool, trigger=trigger)

    def audit(self, prefix: str = "", trigger: str = "scheduled") -> dict[str, VerificationResult]:
        """Verify every .zip archive below prefix."""
        results = {}
        for name in self.storage.list(prefix):
            if not name.endswith(".zip"):
                continue
            results[name] = self.verify_remote(name, trigger=trigger)
        failed = sum(1 for r in results.values() if not r.passed)
        logger.info(f"Audit finished: {len(results)} archives, {failed} not passing")
        return results


def _error_result(message: str, trigger: str, start: float | None = None) -> VerificationResult:
    duration = round(time.monotonic() - start, 2) if start is not None else 0.0
    return VerificationResult(
        status=STATUS_ERROR,
        error_summary=message,
        errors=[message],
        duration_seconds=duration,
        trigger=trigger,
    )
