"""
Object storage backends for Tessera.

Usage:
    from tessera.storage import create_storage

    storage = create_storage(settings)
    storage.put("backups/backup.zip", data)

create_storage() always returns a RetryingStorage around the configured
backend so callers never talk to a bare backend.
"""

from __future__ import annotations

from tessera.config.settings import ConfigurationError, Settings
from tessera.storage.base import (
    ObjectNotFoundError,
    ObjectStorage,
    StorageError,
    StorageTransientError,
)
from tessera.storage.local import LocalStorage
from tessera.storage.memory import MemoryStorage
from tessera.storage.retry import RetryingStorage, retry
from tessera.storage.s3 import S3Storage


def create_storage(settings: Settings) -> RetryingStorage:
    """
    Build the configured storage backend wrapped in the retry layer.

    Raises:
        ConfigurationError: If the storage driver is not supported.
    """
    config = settings.storage
    backend: ObjectStorage
    if config.driver == "local":
        backend = LocalStorage(config.root)
    elif config.driver == "memory":
        backend = MemoryStorage()
    elif config.driver == "s3":
        backend = S3Storage(
            bucket=config.bucket,
            prefix=config.prefix,
            region=config.region,
            endpoint_url=config.endpoint_url,
        )
    else:
        raise ConfigurationError(f"Unsupported storage driver: {config.driver}")

    return RetryingStorage(
        backend,
        max_retries=config.retries,
        initial_backoff_ms=config.backoff_ms,
        max_backoff_ms=config.max_backoff_ms,
    )


__all__ = [
    "ObjectStorage",
    "LocalStorage",
    "MemoryStorage",
    "S3Storage",
    "RetryingStorage",
    "retry",
    "create_storage",
    "StorageError",
    "StorageTransientError",
    "ObjectNotFoundError",
]
