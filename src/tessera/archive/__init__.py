"""
Archive construction, reading and verification.

Usage:
    from tessera.archive import ArchiveWriter, IntegrityVerifier

    with ArchiveWriter(path, compression_level=6) as writer:
        writer.add_file("files/app.conf", "/etc/app.conf")
        writer.add_bytes("manifest.json", manifest.to_json())

    result = IntegrityVerifier().verify(path)
"""

from tessera.archive.filters import (
    ExtensionFilter,
    FileFilter,
    FilterChain,
    MaxFileSizeFilter,
    PatternFilter,
    iter_files,
    should_exclude_path,
)
from tessera.archive.manifest import (
    MANIFEST_NAME,
    ArchiveCorruptionError,
    Manifest,
    ManifestBuilder,
    ManifestEntry,
)
from tessera.archive.reader import ArchiveReader
from tessera.archive.verifier import IntegrityVerifier, VerificationResult
from tessera.archive.writer import ENVELOPE_MARKER, ArchiveWriteError, ArchiveWriter

__all__ = [
    # Manifest
    "Manifest",
    "ManifestEntry",
    "ManifestBuilder",
    "MANIFEST_NAME",
    # Filters
    "FileFilter",
    "ExtensionFilter",
    "PatternFilter",
    "MaxFileSizeFilter",
    "FilterChain",
    "iter_files",
    "should_exclude_path",
    # Writing and reading
    "ArchiveWriter",
    "ArchiveReader",
    "ENVELOPE_MARKER",
    # Verification
    "IntegrityVerifier",
    "VerificationResult",
    # Errors
    "ArchiveWriteError",
    "ArchiveCorruptionError",
]
