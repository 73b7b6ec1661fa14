"""
Integrity verification of finished archives.

The verifier reads manifest.json from an archive and checks every entry it
lists: the entry must exist, its plaintext size must match (a manifest size
of 0 disables the size check), and its SHA-256 must match when the manifest
records one. Problems are reported in a VerificationResult; verify() itself
never raises for a bad archive.

The same algorithm runs right after a build (post_build), on demand (manual)
and from the scheduled audit of uploaded archives (scheduled).
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
import zipfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO

from tessera.archive.manifest import HASH_BLOCK_SIZE, ArchiveCorruptionError
from tessera.archive.reader import ArchiveReader
from tessera.security.encryption import EncryptionError, EncryptionManager

logger = logging.getLogger(__name__)

MAX_SUMMARY_ERRORS = 5

STATUS_PASSED = "passed"
STATUS_FAILED = "failed"
STATUS_ERROR = "error"


@dataclass
class VerificationResult:
    """Outcome of one verification call."""

    checked: int = 0
    failed: int = 0
    error_summary: str | None = None
    errors: list[str] = field(default_factory=list)
    status: str = STATUS_PASSED
    duration_seconds: float = 0.0
    trigger: str = "manual"

    @property
    def passed(self) -> bool:
        return self.status == STATUS_PASSED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "checked": self.checked,
            "failed": self.failed,
            "error_summary": self.error_summary,
            "duration_seconds": self.duration_seconds,
            "trigger": self.trigger,
        }


class IntegrityVerifier:
    """Verifies archives against their embedded manifest."""

    def __init__(self, encryption: EncryptionManager | None = None) -> None:
        self.encryption = encryption

    def verify(
        self,
        source: bytes | Path | str | BinaryIO,
        trigger: str = "manual",
    ) -> VerificationResult:
        """
        Verify an archive.

        Args:
            source: Archive bytes, path, or seekable binary file object.
            trigger: Recorded in the result (manual, post_build, scheduled).

        Returns:
            VerificationResult. Status is "passed" when every entry checks
            out, "failed" when at least one entry does not, and "error" when
            the archive or its manifest cannot be read at all.
        """
        start = time.monotonic()
        try:
            with ArchiveReader(source, encryption=self.encryption) as reader:
                result = self._verify_entries(reader)
        except (
            ArchiveCorruptionError,
            EncryptionError,
            zipfile.BadZipFile,
            zlib.error,
            OSError,
            EOFError,
            RuntimeError,
            NotImplementedError,
        ) as e:
            logger.error(f"Verification error: {e}")
            result = VerificationResult(
                status=STATUS_ERROR,
                error_summary=str(e),
                errors=[str(e)],
            )

        result.trigger = trigger
        result.duration_seconds = round(time.monotonic() - start, 2)

        if result.status == STATUS_PASSED:
            logger.info(f"Verification passed: {result.checked} entries checked")
        elif result.status == STATUS_FAILED:
            logger.error(
                f"Verification failed: {result.failed} of "
                f"{result.checked + result.failed} entries: {result.error_summary}"
            )
        return result

    def _verify_entries(self, reader: ArchiveReader) -> VerificationResult:
        manifest = reader.read_manifest()
        checked = 0
        failed = 0
        errors: list[str] = []

        for entry in manifest.entries:
            path = entry.path
            if path not in reader:
                errors.append(f"Missing: {path}")
                failed += 1
                continue

            needs_stream = bool(entry.sha256) or (entry.size != 0 and reader.is_encrypted(path))
            actual_hash = ""
            if needs_stream:
                try:
                    actual_size, actual_hash = _hash_entry(reader, path)
                except (
                    EncryptionError,
                    zipfile.BadZipFile,
                    zlib.error,
                    OSError,
                    EOFError,
                    RuntimeError,
                    NotImplementedError,
                ) as e:
                    logger.debug(f"Cannot read {path}: {e}")
                    errors.append(f"Cannot read: {path}")
                    failed += 1
                    continue
            else:
                actual_size = reader.stored_size(path)

            # A manifest size of 0 means "don't check size"
            if entry.size != 0 and entry.size != actual_size:
                errors.append(f"Size mismatch: {path} (expected {entry.size}, got {actual_size})")
                failed += 1
                continue

            if entry.sha256 and not hmac.compare_digest(
                entry.sha256.lower().encode("utf-8"), actual_hash.encode("utf-8")
            ):
                errors.append(f"Hash mismatch: {path}")
                failed += 1
                continue

            checked += 1

        return VerificationResult(
            checked=checked,
            failed=failed,
            error_summary="; ".join(errors[:MAX_SUMMARY_ERRORS]) if errors else None,
            errors=errors,
            status=STATUS_PASSED if failed == 0 else STATUS_FAILED,
        )


def _hash_entry(reader: ArchiveReader, path: str) -> tuple[int, str]:
    """Stream an entry's plaintext, returning (size, sha256 hex)."""
    sha256 = hashlib.sha256()
    size = 0
    with reader.open_entry(path) as stream:
        for block in iter(lambda: stream.read(HASH_BLOCK_SIZE), b""):
            sha256.update(block)
            size += len(block)
    return size, sha256.hexdigest()
