"""
Concurrent upload scheduler for chunks.

Chunks are uploaded on native threads, at most max_concurrent at a time. A
new upload starts whenever a running one completes, fails or times out, so
the number of in-flight payloads stays bounded. Storage calls go through the
storage object given, which is normally a RetryingStorage; the scheduler
itself never retries.

The producer side and the scheduler are connected by a ChunkChannel, a
bounded queue whose put() blocks when the scheduler falls behind.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from tessera.chunked.producer import Chunk, ChunkRef
from tessera.storage.base import ObjectStorage

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 3
DEFAULT_TIMEOUT_SECONDS = 60.0
FAILURE_RATE_THRESHOLD = 0.5
CHANNEL_POLL_SECONDS = 0.1


class UploadState(str, Enum):
    """Lifecycle of one chunk upload."""

    QUEUED = "queued"
    UPLOADING = "uploading"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class UploadTask:
    """A chunk travelling through the scheduler."""

    ref: ChunkRef
    payload: bytes | None
    state: UploadState = UploadState.QUEUED
    attempts: int = 0
    error: str | None = None
    started_at: float = 0.0
    deadline: float = 0.0
    thread: threading.Thread | None = field(default=None, repr=False, compare=False)

    @classmethod
    def for_chunk(cls, chunk: Chunk) -> UploadTask:
        return cls(ref=chunk.ref(), payload=chunk.payload)


@dataclass(frozen=True)
class UploadResult:
    """Outcome of one chunk upload."""

    ref: ChunkRef
    success: bool
    error: str | None
    duration: float
    state: UploadState

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk": self.ref.name,
            "size": self.ref.size,
            "success": self.success,
            "error": self.error,
            "duration": round(self.duration, 3),
            "state": self.state.value,
        }


@dataclass
class UploadBatchResult:
    """All upload results of one scheduler run."""

    results: list[UploadResult] = field(default_factory=list)
    duration: float = 0.0

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed_count(self) -> int:
        return self.total - self.succeeded

    @property
    def failure_rate(self) -> float:
        if not self.results:
            return 0.0
        return self.failed_count / self.total

    @property
    def failed(self) -> bool:
        """True when more than half of the uploads failed."""
        return self.failure_rate > FAILURE_RATE_THRESHOLD

    @property
    def bytes_uploaded(self) -> int:
        return sum(r.ref.size for r in self.results if r.success)


class ChunkUploadFailure(Exception):
    """Raised when a chunk batch did not upload completely."""

    def __init__(self, message: str, batch: UploadBatchResult | None = None) -> None:
        super().__init__(message)
        self.batch = batch


class ChannelClosedError(Exception):
    """Raised by ChunkChannel.put() once the consumer has gone away."""

    pass


# -----------------------------------------------------------------------------
# Channel
# -----------------------------------------------------------------------------

_END = object()


class ChunkChannel:
    """
    Bounded hand-off between a producer thread and the scheduler.

    put() blocks while the channel holds capacity chunks. The producer calls
    close() when done, passing its exception if it failed; iterating the
    channel yields chunks until then and re-raises that exception.
    """

    def __init__(self, capacity: int = DEFAULT_MAX_CONCURRENT) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._queue: queue.Queue = queue.Queue(maxsize=capacity)
        self._error: BaseException | None = None
        self._closed = False
        self._cancelled = threading.Event()

    def put(self, chunk: Chunk) -> None:
        """
        Hand a chunk to the consumer, blocking while the channel is full.

        Raises:
            ChannelClosedError: If the channel was closed or cancelled.
        """
        if self._closed:
            raise ChannelClosedError("Channel is closed")
        self._put(chunk)

    def _put(self, item: object) -> None:
        while True:
            if self._cancelled.is_set():
                raise ChannelClosedError("Channel consumer has stopped")
            try:
                self._queue.put(item, timeout=CHANNEL_POLL_SECONDS)
                return
            except queue.Full:
                continue

    def close(self, error: BaseException | None = None) -> None:
        """Signal the end of the stream, optionally with the producer's error."""
        if self._closed:
            return
        self._closed = True
        self._error = error
        try:
            self._put(_END)
        except ChannelClosedError:
            pass

    def cancel(self) -> None:
        """Stop accepting chunks; a blocked put() raises ChannelClosedError."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def __iter__(self) -> Iterator[Chunk]:
        while True:
            item = self._queue.get()
            if item is _END:
                if self._error is not None:
                    raise self._error
                return
            yield item


# -----------------------------------------------------------------------------
# Scheduler
# -----------------------------------------------------------------------------


class UploadScheduler:
    """
    Uploads chunks with bounded concurrency.

    Usage:
        scheduler = UploadScheduler(storage, max_concurrent=3)
        batch = scheduler.upload_chunks(chunks)
        if batch.failed:
            ...
    """

    def __init__(
        self,
        storage: ObjectStorage,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.storage = storage
        self.max_concurrent = max_concurrent
        self.timeout_seconds = timeout_seconds
        self._clock = clock or time.monotonic
        self._batch = UploadBatchResult()
        self._timed_out: list[UploadTask] = []

    def upload_chunks(self, chunks: Iterable[Chunk]) -> UploadBatchResult:
        """
        Upload every chunk the iterable yields.

        Individual failures never abort the batch. If the iterable itself
        raises (a producer error re-raised by a ChunkChannel), the uploads
        already running are waited for and the error is re-raised; the
        partial batch stays available through successful_uploads().

        Returns:
            UploadBatchResult for all chunks.
        """
        started = self._clock()
        batch = UploadBatchResult()
        self._batch = batch
        self._timed_out = []
        completions: queue.Queue = queue.Queue()
        active: dict[str, UploadTask] = {}
        source = iter(chunks)
        exhausted = False
        source_error: BaseException | None = None

        while True:
            while not exhausted and len(active) < self.max_concurrent:
                try:
                    chunk = next(source)
                except StopIteration:
                    exhausted = True
                    break
                except Exception as e:
                    source_error = e
                    exhausted = True
                    break
                task = UploadTask.for_chunk(chunk)
                active[task.ref.name] = task
                self._start(task, completions)

            if not active:
                break

            wait = min(task.deadline for task in active.values()) - self._clock()
            try:
                name, error = completions.get(timeout=max(wait, 0.0))
            except queue.Empty:
                self._expire(active, batch)
                continue

            task = active.pop(name, None)
            if task is None:
                logger.debug(f"Ignoring late completion of timed-out upload {name}")
                continue
            self._finish(task, error, batch)

        batch.duration = self._clock() - started
        logger.info(
            f"Uploaded {batch.succeeded}/{batch.total} chunks "
            f"({batch.bytes_uploaded:,} bytes, {batch.failure_rate:.0%} failed)"
        )
        if source_error is not None:
            raise source_error
        return batch

    def _start(self, task: UploadTask, completions: queue.Queue) -> None:
        payload = task.payload
        task.payload = None
        task.state = UploadState.UPLOADING
        task.attempts += 1
        task.started_at = self._clock()
        task.deadline = task.started_at + self.timeout_seconds
        logger.debug(f"Uploading {task.ref.name} ({task.ref.size:,} bytes)")

        task.thread = threading.Thread(
            target=self._upload,
            args=(task.ref.name, payload, completions),
            name=f"tessera-upload-{task.ref.index}",
            daemon=True,
        )
        task.thread.start()

    def _upload(self, name: str, payload: bytes, completions: queue.Queue) -> None:
        try:
            self.storage.put(name, payload)
        except Exception as e:
            completions.put((name, e))
        else:
            completions.put((name, None))

    def _finish(
        self,
        task: UploadTask,
        error: BaseException | None,
        batch: UploadBatchResult,
    ) -> None:
        duration = self._clock() - task.started_at
        if error is None:
            task.state = UploadState.SUCCEEDED
        else:
            task.state = UploadState.FAILED
            task.error = str(error) or type(error).__name__
            logger.warning(f"Upload of {task.ref.name} failed: {task.error}")
        batch.results.append(
            UploadResult(
                ref=task.ref,
                success=error is None,
                error=task.error,
                duration=duration,
                state=task.state,
            )
        )

    def _expire(self, active: dict[str, UploadTask], batch: UploadBatchResult) -> None:
        now = self._clock()
        for name in [n for n, t in active.items() if t.deadline <= now]:
            task = active.pop(name)
            task.state = UploadState.TIMED_OUT
            self._timed_out.append(task)
            task.error = f"Upload timed out after {self.timeout_seconds:g}s"
            logger.warning(f"Upload of {name} timed out")
            batch.results.append(
                UploadResult(
                    ref=task.ref,
                    success=False,
                    error=task.error,
                    duration=now - task.started_at,
                    state=task.state,
                )
            )

    def wait_for_timed_out(self, timeout: float | None = None) -> list[ChunkRef]:
        """
        Wait for timed-out uploads of the last batch to settle.

        A timed-out put keeps running on its thread and may still land in
        storage. Callers that clean up chunks wait here first so a late put
        cannot recreate a chunk after it was deleted.

        Args:
            timeout: Total seconds to wait; defaults to the upload timeout.

        Returns:
            Refs of uploads still running when the wait ended.
        """
        limit = self.timeout_seconds if timeout is None else timeout
        deadline = time.monotonic() + limit
        pending: list[ChunkRef] = []
        for task in self._timed_out:
            if task.thread is None:
                continue
            task.thread.join(max(deadline - time.monotonic(), 0.0))
            if task.thread.is_alive():
                logger.warning(f"Timed-out upload of {task.ref.name} is still running")
                pending.append(task.ref)
        return pending

    # -------------------------------------------------------------------------
    # Last batch
    # -------------------------------------------------------------------------

    def successful_uploads(self) -> list[UploadResult]:
        return [r for r in self._batch.results if r.success]

    def failed_uploads(self) -> list[UploadResult]:
        return [r for r in self._batch.results if not r.success]

    def upload_stats(self) -> dict[str, Any]:
        """Summary of the last batch."""
        batch = self._batch
        return {
            "total": batch.total,
            "succeeded": batch.succeeded,
            "failed": batch.failed_count,
            "timed_out": sum(1 for r in batch.results if r.state is UploadState.TIMED_OUT),
            "failure_rate": batch.failure_rate,
            "bytes_uploaded": batch.bytes_uploaded,
            "duration_seconds": round(batch.duration, 3),
        }
