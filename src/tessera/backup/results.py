"""
Structured results handed to the collaborators around the core.

A run never reports success or failure through exceptions; the services
return a BackupResult that a scheduler, notifier or audit log can consume.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from tessera.archive.manifest import Manifest
from tessera.archive.verifier import VerificationResult
from tessera.chunked.scheduler import UploadBatchResult, UploadResult

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


@dataclass
class BackupResult:
    """Result of a backup run."""

    success: bool
    status: str = STATUS_FAILED
    archive_path: str | None = None
    size_bytes: int = 0
    manifest_entry_count: int = 0
    manifest: Manifest | None = None
    verification: VerificationResult | None = None
    error: str | None = None
    chunk_count: int = 0
    memory_stats: dict[str, Any] = field(default_factory=dict)
    uploads: UploadBatchResult | None = None
    skipped_connections: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @classmethod
    def failure(cls, error: str, **kwargs: Any) -> BackupResult:
        return cls(success=False, status=STATUS_FAILED, error=error, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Convert result to a JSON-serializable dictionary."""
        return {
            "success": self.success,
            "status": self.status,
            "archive_path": self.archive_path,
            "size_bytes": self.size_bytes,
            "manifest_entry_count": self.manifest_entry_count,
            "verification": self.verification.to_dict() if self.verification else None,
            "error": self.error,
            "chunk_count": self.chunk_count,
            "memory_stats": self.memory_stats,
            "skipped_connections": self.skipped_connections,
            "duration_seconds": self.duration_seconds,
        }


__all__ = [
    "BackupResult",
    "VerificationResult",
    "UploadResult",
    "UploadBatchResult",
    "STATUS_SUCCESS",
    "STATUS_FAILED",
]
