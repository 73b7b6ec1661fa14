"""
Bounded retry with exponential backoff for object storage calls.

A transient network error during a long multi-chunk upload should not abort
the whole run on the first failure. Every storage call made by the backup
services goes through RetryingStorage, which runs the call inside retry().

Backoff starts at initial_backoff_ms and doubles after every failed attempt,
capped at max_backoff_ms: 500, 1000, 2000, 4000, 5000, 5000, ...
"""

from __future__ import annotations

import logging
import tempfile
import time
from collections.abc import Callable
from typing import BinaryIO, TypeVar

from tessera.storage.base import (
    ObjectNotFoundError,
    ObjectStorage,
    StorageTransientError,
    copy_stream,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_BACKOFF_MS = 500
DEFAULT_MAX_BACKOFF_MS = 5000

# Streams larger than this are spooled to disk while waiting for a retry
SPOOL_MAX_SIZE = 16 * 1024 * 1024


def backoff_delay_ms(attempt: int, initial_backoff_ms: int, max_backoff_ms: int) -> int:
    """Delay before retry number `attempt` (0-based)."""
    return min(initial_backoff_ms * (2**attempt), max_backoff_ms)


def retry(
    operation: Callable[[], T],
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_backoff_ms: int = DEFAULT_INITIAL_BACKOFF_MS,
    max_backoff_ms: int = DEFAULT_MAX_BACKOFF_MS,
    retry_on: tuple[type[BaseException], ...] = (StorageTransientError, OSError),
    sleep: Callable[[float], None] = time.sleep,
    description: str = "storage operation",
) -> T:
    """
    Execute an operation with retry logic and exponential backoff.

    Args:
        operation: Zero-argument callable to run.
        max_retries: Retries after the first attempt (attempts = max_retries + 1).
        initial_backoff_ms: Delay before the first retry.
        max_backoff_ms: Upper bound for any single delay.
        retry_on: Exception types considered transient.
        sleep: Sleep function taking seconds (injectable for tests).
        description: Label used in log messages.

    Returns:
        The return value of the operation.

    Raises:
        ObjectNotFoundError: Immediately, without retrying.
        The last exception if all retries are exhausted.
        ValueError: If max_retries is negative.
    """
    for attempt in range(max_retries + 1):
        try:
            return operation()
        except ObjectNotFoundError:
            # Missing objects don't come back by waiting
            raise
        except retry_on as e:
            if attempt >= max_retries:
                logger.error(f"{description} failed after {max_retries + 1} attempts")
                raise
            delay_ms = backoff_delay_ms(attempt, initial_backoff_ms, max_backoff_ms)
            logger.warning(
                f"{description} failed, retrying in {delay_ms}ms "
                f"(attempt {attempt + 1}/{max_retries}): {e}"
            )
            sleep(delay_ms / 1000.0)

    raise ValueError("max_retries must not be negative")


class RetryingStorage(ObjectStorage):
    """
    ObjectStorage wrapper that retries every call of an inner storage.

    Streaming puts are buffered through a seekable spool so that a retry can
    rewind and send the same bytes again.
    """

    def __init__(
        self,
        inner: ObjectStorage,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_backoff_ms: int = DEFAULT_INITIAL_BACKOFF_MS,
        max_backoff_ms: int = DEFAULT_MAX_BACKOFF_MS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.inner = inner
        self.driver = inner.driver
        self.max_retries = max_retries
        self.initial_backoff_ms = initial_backoff_ms
        self.max_backoff_ms = max_backoff_ms
        self._sleep = sleep

    def _call(self, description: str, operation: Callable[[], T]) -> T:
        return retry(
            operation,
            max_retries=self.max_retries,
            initial_backoff_ms=self.initial_backoff_ms,
            max_backoff_ms=self.max_backoff_ms,
            sleep=self._sleep,
            description=description,
        )

    def put(self, name: str, data: bytes) -> None:
        self._call(f"put {name}", lambda: self.inner.put(name, data))

    def put_stream(self, name: str, stream: BinaryIO) -> None:
        if stream.seekable():
            start = stream.tell()

            def upload() -> None:
                stream.seek(start)
                self.inner.put_stream(name, stream)

            self._call(f"put {name}", upload)
            return

        with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE) as spool:
            copy_stream(stream, spool)

            def upload_spooled() -> None:
                spool.seek(0)
                self.inner.put_stream(name, spool)

            self._call(f"put {name}", upload_spooled)

    def get(self, name: str) -> bytes:
        return self._call(f"get {name}", lambda: self.inner.get(name))

    def open_read(self, name: str) -> BinaryIO:
        return self._call(f"open {name}", lambda: self.inner.open_read(name))

    def delete(self, name: str) -> bool:
        return self._call(f"delete {name}", lambda: self.inner.delete(name))

    def list(self, prefix: str = "") -> list[str]:
        return self._call(f"list {prefix or '/'}", lambda: self.inner.list(prefix))

    def size(self, name: str) -> int:
        return self._call(f"size {name}", lambda: self.inner.size(name))

    def exists(self, name: str) -> bool:
        return self._call(f"exists {name}", lambda: self.inner.exists(name))

    def download_to(self, name: str, target: BinaryIO) -> int:
        """Download with retries; a seekable target is rewound before each attempt."""
        if not target.seekable():
            return self.inner.download_to(name, target)
        start = target.tell()

        def download() -> int:
            target.seek(start)
            target.truncate()
            return self.inner.download_to(name, target)

        return self._call(f"download {name}", download)
