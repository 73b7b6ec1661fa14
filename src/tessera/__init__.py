"""
Tessera - portable backup archives from database dumps and filesystem trees

Tessera builds one compressed (optionally encrypted) archive per run out of
database dumps and configured directories, uploads it to object storage, and
verifies it against the manifest embedded in the archive.

Key Features:
    - Direct archive writer for hosts with usable local disk
    - Chunked streaming writer for hosts without one
    - Bounded-concurrency chunk uploads with retry and backoff
    - Per-archive envelope encryption with a wrapped data key
    - SHA-256 manifest verification after build and on a schedule

Design Principles:
    - One immutable configuration value, passed explicitly
    - Both writers produce the same archive layout
    - Verification failures are reported, never raised
"""

__version__ = "0.1.0"

from tessera.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
