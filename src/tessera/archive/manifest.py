"""
Archive manifest model and builder.

Every archive embeds a manifest.json describing its logical entries with
their plaintext size and SHA-256. The Integrity Verifier checks an archive
against this document, so both writers (direct and chunked) must register
exactly the entries they add.
"""

from __future__ import annotations

import hashlib
import json
import logging
import socket
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from tessera import __version__
from tessera.config.settings import Settings

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
MANIFEST_NAME = "manifest.json"
HASH_BLOCK_SIZE = 8192


class ArchiveCorruptionError(Exception):
    """Raised when an archive or its manifest cannot be trusted."""

    pass


@dataclass(frozen=True)
class ManifestEntry:
    """One logical entry of an archive."""

    path: str
    size: int
    sha256: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "size": self.size, "sha256": self.sha256}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ManifestEntry:
        return cls(
            path=str(data["path"]),
            size=int(data.get("size") or 0),
            sha256=str(data.get("sha256") or ""),
        )


@dataclass(frozen=True)
class Manifest:
    """Manifest document embedded in every archive as manifest.json."""

    schema_version: int
    generated_at: str
    app: dict[str, Any] = field(default_factory=dict)
    backup: dict[str, Any] = field(default_factory=dict)
    storage: dict[str, Any] = field(default_factory=dict)
    database: dict[str, Any] = field(default_factory=dict)
    files: dict[str, Any] = field(default_factory=dict)
    entries: tuple[ManifestEntry, ...] = ()

    @property
    def entry_count(self) -> int:
        return len(self.entries)

    @property
    def total_size(self) -> int:
        return sum(entry.size for entry in self.entries)

    def to_dict(self) -> dict[str, Any]:
        """Convert manifest to dictionary."""
        return {
            "schema_version": self.schema_version,
            "generated_at": self.generated_at,
            "app": self.app,
            "backup": self.backup,
            "storage": self.storage,
            "database": self.database,
            "files": self.files,
            "entries": [entry.to_dict() for entry in self.entries],
        }

    def to_json(self) -> bytes:
        """Serialize as pretty-printed UTF-8 JSON."""
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False).encode("utf-8")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Manifest:
        """
        Create manifest from dictionary.

        Raises:
            ArchiveCorruptionError: If the schema version is unknown or the
                structure is invalid.
        """
        if not isinstance(data, dict):
            raise ArchiveCorruptionError("Manifest is not a JSON object")

        version = data.get("schema_version")
        if version != SCHEMA_VERSION:
            raise ArchiveCorruptionError(f"Unsupported manifest schema_version: {version!r}")

        try:
            entries = tuple(ManifestEntry.from_dict(e) for e in data.get("entries", []))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ArchiveCorruptionError(f"Invalid manifest entry: {e}") from e

        return cls(
            schema_version=version,
            generated_at=str(data.get("generated_at", "")),
            app=_section(data, "app"),
            backup=_section(data, "backup"),
            storage=_section(data, "storage"),
            database=_section(data, "database"),
            files=_section(data, "files"),
            entries=entries,
        )

    @classmethod
    def from_json(cls, raw: bytes | str) -> Manifest:
        try:
            data = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as e:
            raise ArchiveCorruptionError(f"Manifest is not valid JSON: {e}") from e
        return cls.from_dict(data)


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    """Return a manifest metadata section, which must be a JSON object."""
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ArchiveCorruptionError(
            f"Manifest section {key!r} must be an object, got {type(value).__name__}"
        )
    return dict(value)


def hash_file(path: Path) -> tuple[int, str]:
    """
    Compute size and SHA-256 of a file, reading in 8 KiB blocks.

    Returns:
        Tuple of (size_bytes, hex_digest).
    """
    sha256 = hashlib.sha256()
    size = 0
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(HASH_BLOCK_SIZE), b""):
            sha256.update(block)
            size += len(block)
    return size, sha256.hexdigest()


@dataclass
class _PendingEntry:
    path: str
    size: int = 0
    sha256: str = ""
    source_path: Path | None = None


class ManifestBuilder:
    """
    Accumulates manifest entries during a backup run.

    Entries are hashed when added, except deferred entries which are hashed
    at build() time. Each run must add a given path at most once; the builder
    does not check for duplicates.
    """

    def __init__(
        self,
        settings: Settings,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(UTC))
        self._entries: list[_PendingEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def add_entry(self, path: str, source: Path | str | bytes) -> ManifestEntry:
        """
        Register an entry, hashing its source immediately.

        Args:
            path: Archive-relative entry name.
            source: Filesystem path of the content, or the content itself.
        """
        if isinstance(source, bytes):
            size, digest = len(source), hashlib.sha256(source).hexdigest()
        else:
            size, digest = hash_file(Path(source))
        self._entries.append(_PendingEntry(path=path, size=size, sha256=digest))
        return ManifestEntry(path=path, size=size, sha256=digest)

    def add_digest(self, path: str, size: int, sha256: str) -> ManifestEntry:
        """Register an entry whose digest was computed elsewhere."""
        self._entries.append(_PendingEntry(path=path, size=size, sha256=sha256))
        return ManifestEntry(path=path, size=size, sha256=sha256)

    def add_deferred_entry(self, path: str, source_path: Path | str) -> None:
        """Register an entry to be hashed when the manifest is built."""
        self._entries.append(_PendingEntry(path=path, source_path=Path(source_path)))

    def build(
        self,
        chunked: bool,
        compression_level: int,
        encryption_enabled: bool,
    ) -> Manifest:
        """
        Build the manifest document.

        Deferred entries whose source no longer exists get size 0 and an
        empty hash.
        """
        entries = []
        for pending in self._entries:
            if pending.source_path is not None:
                try:
                    size, digest = hash_file(pending.source_path)
                except OSError as e:
                    logger.warning(f"Cannot hash deferred entry {pending.path}: {e}")
                    size, digest = 0, ""
                entries.append(ManifestEntry(path=pending.path, size=size, sha256=digest))
            else:
                entries.append(
                    ManifestEntry(path=pending.path, size=pending.size, sha256=pending.sha256)
                )

        settings = self.settings
        return Manifest(
            schema_version=SCHEMA_VERSION,
            generated_at=self._clock().isoformat(),
            app={
                "name": settings.app_name,
                "env": settings.environment,
                "host": socket.gethostname() or None,
                "tessera_version": __version__,
            },
            backup={
                "chunked": chunked,
                "compression_level": compression_level,
                "encryption_enabled": encryption_enabled,
            },
            storage={
                "driver": settings.storage.driver,
                "backup_path": settings.storage.backup_path,
            },
            database={
                "connections": [c.name for c in settings.database.connections],
                "include_tables": list(settings.database.include_tables),
                "exclude_tables": list(settings.database.exclude_tables),
            },
            files={
                "paths": list(settings.files.paths),
                "exclude_paths": list(settings.files.exclude_paths),
            },
            entries=tuple(entries),
        )

    def reset(self) -> None:
        """Clear all entries for reuse."""
        self._entries = []
