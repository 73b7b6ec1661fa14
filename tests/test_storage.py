"""
Tests for the object storage backends and the retry layer.

Uses Python's unittest module.
Tests local and in-memory storage, S3 error translation with a mocked
client, exponential backoff and the RetryingStorage wrapper.
"""

from __future__ import annotations

import io
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock

from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError

from tessera.config.settings import Settings, settings_from_dict
from tessera.storage import create_storage
from tessera.storage.base import (
    ObjectNotFoundError,
    ObjectStorage,
    StorageError,
    StorageTransientError,
)
from tessera.storage.local import LocalStorage
from tessera.storage.memory import MemoryStorage
from tessera.storage.retry import RetryingStorage, backoff_delay_ms, retry
from tessera.storage.s3 import S3Storage


def _client_error(code: str, operation: str = "GetObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FlakyStorage(MemoryStorage):
    """MemoryStorage whose put fails a fixed number of times first."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def put(self, name: str, data: bytes) -> None:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise StorageTransientError("connection reset")
        super().put(name, data)


class TestLocalStorage(unittest.TestCase):
    """Tests for LocalStorage."""

    def setUp(self) -> None:
        """Create a temporary storage root."""
        self.temp_dir = tempfile.mkdtemp()
        self.storage = LocalStorage(self.temp_dir)

    def tearDown(self) -> None:
        """Remove the storage root."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_put_and_get(self) -> None:
        """Test storing and reading back an object."""
        self.storage.put("backups/a.zip", b"payload")

        self.assertEqual(self.storage.get("backups/a.zip"), b"payload")
        self.assertEqual(self.storage.size("backups/a.zip"), 7)
        self.assertTrue(self.storage.exists("backups/a.zip"))

    def test_put_stream(self) -> None:
        """Test storing the remainder of a stream."""
        stream = io.BytesIO(b"headerbody")
        stream.seek(6)

        self.storage.put_stream("x", stream)

        self.assertEqual(self.storage.get("x"), b"body")

    def test_put_replaces_object(self) -> None:
        """Test that put overwrites an existing object."""
        self.storage.put("x", b"one")
        self.storage.put("x", b"two")

        self.assertEqual(self.storage.get("x"), b"two")

    def test_no_temp_files_left_behind(self) -> None:
        """Test that atomic writes leave only the final object."""
        self.storage.put("dir/x", b"data")

        files = [p.name for p in Path(self.temp_dir, "dir").iterdir()]

        self.assertEqual(files, ["x"])

    def test_get_missing(self) -> None:
        """Test that a missing object raises ObjectNotFoundError."""
        with self.assertRaises(ObjectNotFoundError):
            self.storage.get("nope")
        with self.assertRaises(ObjectNotFoundError):
            self.storage.open_read("nope")
        self.assertFalse(self.storage.exists("nope"))

    def test_delete(self) -> None:
        """Test deleting existing and missing objects."""
        self.storage.put("x", b"1")

        self.assertTrue(self.storage.delete("x"))
        self.assertFalse(self.storage.delete("x"))

    def test_list_by_prefix(self) -> None:
        """Test listing names sorted and filtered by prefix."""
        self.storage.put("backups/b.zip", b"")
        self.storage.put("backups/a.zip", b"")
        self.storage.put("other/c.zip", b"")

        self.assertEqual(self.storage.list("backups/"), ["backups/a.zip", "backups/b.zip"])
        self.assertEqual(len(self.storage.list()), 3)

    def test_rejects_escaping_names(self) -> None:
        """Test that names outside the root are rejected."""
        with self.assertRaises(StorageError):
            self.storage.put("../outside", b"x")
        with self.assertRaises(StorageError):
            self.storage.put("/etc/passwd", b"x")

    def test_download_to(self) -> None:
        """Test copying an object into a stream."""
        self.storage.put("x", b"a" * 20000)
        target = io.BytesIO()

        copied = self.storage.download_to("x", target)

        self.assertEqual(copied, 20000)
        self.assertEqual(target.getvalue(), b"a" * 20000)


class TestMemoryStorage(unittest.TestCase):
    """Tests for MemoryStorage."""

    def test_round_trip(self) -> None:
        """Test basic put/get/list/delete."""
        storage = MemoryStorage()
        storage.put("a/1", b"one")
        storage.put("a/2", b"two")
        storage.put("b/3", b"three")

        self.assertEqual(storage.get("a/1"), b"one")
        self.assertEqual(storage.open_read("a/2").read(), b"two")
        self.assertEqual(storage.list("a/"), ["a/1", "a/2"])
        self.assertEqual(storage.size("b/3"), 5)
        self.assertTrue(storage.delete("a/1"))
        self.assertFalse(storage.exists("a/1"))

    def test_missing(self) -> None:
        """Test that missing objects raise ObjectNotFoundError."""
        storage = MemoryStorage()

        with self.assertRaises(ObjectNotFoundError) as cm:
            storage.get("nope")

        self.assertEqual(cm.exception.name, "nope")


class TestS3Storage(unittest.TestCase):
    """Tests for S3Storage with a mocked boto3 client."""

    def setUp(self) -> None:
        """Build storage around a MagicMock client."""
        self.client = MagicMock()
        self.storage = S3Storage(bucket="bucket", prefix="/tenant/", client=self.client)

    def test_put_uses_prefixed_key(self) -> None:
        """Test that object names get the configured prefix."""
        self.storage.put("backups/a.zip", b"data")

        self.client.put_object.assert_called_once_with(
            Bucket="bucket", Key="tenant/backups/a.zip", Body=b"data"
        )

    def test_put_stream(self) -> None:
        """Test streaming uploads go through upload_fileobj."""
        stream = io.BytesIO(b"data")

        self.storage.put_stream("x", stream)

        self.client.upload_fileobj.assert_called_once_with(stream, "bucket", "tenant/x")

    def test_get_reads_body(self) -> None:
        """Test reading an object body."""
        self.client.get_object.return_value = {"Body": io.BytesIO(b"content")}

        self.assertEqual(self.storage.get("x"), b"content")

    def test_body_read_errors_are_transient(self) -> None:
        """Test that a read timeout while streaming the body is retryable."""
        body = MagicMock()
        body.read.side_effect = ReadTimeoutError(endpoint_url="https://s3.example.com")
        self.client.get_object.return_value = {"Body": body}

        with self.assertRaises(StorageTransientError):
            self.storage.get("x")

        body.close.assert_called_once()

    def test_not_found_is_translated(self) -> None:
        """Test that NoSuchKey becomes ObjectNotFoundError."""
        self.client.get_object.side_effect = _client_error("NoSuchKey")

        with self.assertRaises(ObjectNotFoundError):
            self.storage.get("x")

    def test_other_client_errors_are_transient(self) -> None:
        """Test that throttling becomes StorageTransientError."""
        self.client.put_object.side_effect = _client_error("SlowDown", "PutObject")

        with self.assertRaises(StorageTransientError):
            self.storage.put("x", b"data")

    def test_connection_errors_are_transient(self) -> None:
        """Test that botocore connection errors become StorageTransientError."""
        self.client.head_object.side_effect = EndpointConnectionError(
            endpoint_url="https://s3.example.com"
        )

        with self.assertRaises(StorageTransientError):
            self.storage.size("x")

    def test_size_and_exists(self) -> None:
        """Test size() via head_object and exists() on a 404."""
        self.client.head_object.return_value = {"ContentLength": 42}
        self.assertEqual(self.storage.size("x"), 42)

        self.client.head_object.side_effect = _client_error("404", "HeadObject")
        self.assertFalse(self.storage.exists("x"))

    def test_delete_missing_returns_false(self) -> None:
        """Test delete() of a missing object."""
        self.client.head_object.side_effect = _client_error("404", "HeadObject")

        self.assertFalse(self.storage.delete("x"))
        self.client.delete_object.assert_not_called()

    def test_list_strips_prefix(self) -> None:
        """Test list() pages through results and strips the prefix."""
        paginator = MagicMock()
        paginator.paginate.return_value = [
            {"Contents": [{"Key": "tenant/backups/b.zip"}]},
            {"Contents": [{"Key": "tenant/backups/a.zip"}]},
            {},
        ]
        self.client.get_paginator.return_value = paginator

        names = self.storage.list("backups/")

        self.assertEqual(names, ["backups/a.zip", "backups/b.zip"])
        paginator.paginate.assert_called_once_with(Bucket="bucket", Prefix="tenant/backups/")


class TestRetry(unittest.TestCase):
    """Tests for retry() and backoff_delay_ms()."""

    def test_backoff_doubles_and_caps(self) -> None:
        """Test the exponential backoff sequence."""
        delays = [backoff_delay_ms(n, 500, 5000) for n in range(6)]

        self.assertEqual(delays, [500, 1000, 2000, 4000, 5000, 5000])

    def test_retries_until_success(self) -> None:
        """Test that a transient failure is retried with backoff."""
        sleeps: list[float] = []
        calls = {"count": 0}

        def operation() -> str:
            calls["count"] += 1
            if calls["count"] < 3:
                raise StorageTransientError("timeout")
            return "done"

        result = retry(operation, max_retries=3, sleep=sleeps.append)

        self.assertEqual(result, "done")
        self.assertEqual(calls["count"], 3)
        self.assertEqual(sleeps, [0.5, 1.0])

    def test_gives_up_after_max_retries(self) -> None:
        """Test that the last error is raised once retries run out."""
        sleeps: list[float] = []
        operation = MagicMock(side_effect=StorageTransientError("down"))

        with self.assertRaises(StorageTransientError):
            retry(operation, max_retries=2, sleep=sleeps.append)

        self.assertEqual(operation.call_count, 3)
        self.assertEqual(sleeps, [0.5, 1.0])

    def test_zero_retries_raises_first_error(self) -> None:
        """Test that max_retries=0 makes one attempt and raises its error."""
        error = StorageTransientError("once")
        operation = MagicMock(side_effect=error)

        with self.assertLogs("tessera.storage.retry", level="ERROR"):
            with self.assertRaises(StorageTransientError) as ctx:
                retry(operation, max_retries=0, sleep=lambda s: None)

        self.assertIs(ctx.exception, error)
        self.assertEqual(operation.call_count, 1)

    def test_negative_retries_rejected(self) -> None:
        """Test that a negative retry count is a ValueError, not a silent no-op."""
        operation = MagicMock(return_value="never")

        with self.assertRaises(ValueError):
            retry(operation, max_retries=-1, sleep=lambda s: None)

        operation.assert_not_called()

    def test_not_found_is_not_retried(self) -> None:
        """Test that ObjectNotFoundError propagates immediately."""
        sleeps: list[float] = []
        operation = MagicMock(side_effect=ObjectNotFoundError("x"))

        with self.assertRaises(ObjectNotFoundError):
            retry(operation, max_retries=3, sleep=sleeps.append)

        self.assertEqual(operation.call_count, 1)
        self.assertEqual(sleeps, [])

    def test_non_transient_errors_propagate(self) -> None:
        """Test that unexpected errors are not retried."""
        operation = MagicMock(side_effect=KeyError("bug"))

        with self.assertRaises(KeyError):
            retry(operation, max_retries=3, sleep=lambda s: None)

        self.assertEqual(operation.call_count, 1)


class TestRetryingStorage(unittest.TestCase):
    """Tests for RetryingStorage."""

    def test_put_retries(self) -> None:
        """Test that a flaky put eventually succeeds."""
        inner = FlakyStorage(failures=2)
        sleeps: list[float] = []
        storage = RetryingStorage(inner, max_retries=3, sleep=sleeps.append)

        storage.put("x", b"data")

        self.assertEqual(inner.get("x"), b"data")
        self.assertEqual(inner.attempts, 3)
        self.assertEqual(sleeps, [0.5, 1.0])

    def test_put_stream_rewinds_seekable_stream(self) -> None:
        """Test that each attempt re-sends the whole seekable stream."""

        class FlakyStreamStorage(MemoryStorage):
            def __init__(self) -> None:
                super().__init__()
                self.attempts = 0

            def put_stream(self, name, stream) -> None:
                self.attempts += 1
                data = stream.read()
                if self.attempts == 1:
                    raise StorageTransientError("reset")
                self.put(name, data)

        inner = FlakyStreamStorage()
        storage = RetryingStorage(inner, sleep=lambda s: None)

        storage.put_stream("x", io.BytesIO(b"full payload"))

        self.assertEqual(inner.get("x"), b"full payload")

    def test_put_stream_spools_unseekable_stream(self) -> None:
        """Test that a non-seekable stream is spooled so it can be retried."""

        class Unseekable(io.RawIOBase):
            def __init__(self, data: bytes) -> None:
                self._data = io.BytesIO(data)

            def readable(self) -> bool:
                return True

            def readinto(self, b) -> int:
                chunk = self._data.read(len(b))
                b[: len(chunk)] = chunk
                return len(chunk)

        inner = MemoryStorage()
        storage = RetryingStorage(inner, sleep=lambda s: None)

        storage.put_stream("x", Unseekable(b"streamed"))

        self.assertEqual(inner.get("x"), b"streamed")

    def test_download_to_truncates_between_attempts(self) -> None:
        """Test that a retried download does not duplicate bytes."""

        class FlakyDownload(MemoryStorage):
            def __init__(self) -> None:
                super().__init__()
                self.attempts = 0

            def download_to(self, name, target) -> int:
                self.attempts += 1
                if self.attempts == 1:
                    target.write(b"partial")
                    raise StorageTransientError("reset")
                return super().download_to(name, target)

        inner = FlakyDownload()
        inner.put("x", b"complete")
        storage = RetryingStorage(inner, sleep=lambda s: None)
        target = io.BytesIO()

        storage.download_to("x", target)

        self.assertEqual(target.getvalue(), b"complete")

    def test_missing_object_not_retried(self) -> None:
        """Test that get() of a missing object fails fast."""
        sleeps: list[float] = []
        storage = RetryingStorage(MemoryStorage(), sleep=sleeps.append)

        with self.assertRaises(ObjectNotFoundError):
            storage.get("missing")

        self.assertEqual(sleeps, [])


class TestCreateStorage(unittest.TestCase):
    """Tests for create_storage()."""

    def setUp(self) -> None:
        """Create a temporary storage root."""
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self) -> None:
        """Remove the storage root."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_local_driver(self) -> None:
        """Test that the local driver is wrapped in RetryingStorage."""
        settings = settings_from_dict(
            {"storage": {"driver": "local", "root": self.temp_dir, "retries": 5}}
        )

        storage = create_storage(settings)

        self.assertIsInstance(storage, RetryingStorage)
        self.assertIsInstance(storage.inner, LocalStorage)
        self.assertEqual(storage.max_retries, 5)
        self.assertEqual(storage.driver, "local")

    def test_memory_driver(self) -> None:
        """Test the memory driver."""
        storage = create_storage(settings_from_dict({"storage": {"driver": "memory"}}))

        self.assertIsInstance(storage.inner, MemoryStorage)
        self.assertIsInstance(storage, ObjectStorage)

    def test_s3_driver(self) -> None:
        """Test that the s3 driver is built without contacting AWS."""
        settings = settings_from_dict(
            {"storage": {"driver": "s3", "bucket": "b", "prefix": "p", "region": "eu-west-1"}}
        )

        storage = create_storage(settings)

        self.assertIsInstance(storage.inner, S3Storage)
        self.assertEqual(storage.inner.bucket, "b")
        self.assertEqual(storage.inner.prefix, "p")

    def test_default_settings(self) -> None:
        """Test that Settings() builds without errors."""
        self.assertIsInstance(Settings().storage.root, str)


if __name__ == "__main__":
    unittest.main()
