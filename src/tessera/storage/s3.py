"""
Amazon S3 (and S3-compatible) object storage.

boto3 clients are thread safe, so one client is shared by every upload
thread. Credentials come from the default boto3 credential chain.
"""

from __future__ import annotations

import logging
from contextlib import closing
from typing import Any, BinaryIO

from botocore.exceptions import BotoCoreError, ClientError

from tessera.storage.base import (
    ObjectNotFoundError,
    ObjectStorage,
    StorageError,
    StorageTransientError,
)

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class S3Storage(ObjectStorage):
    """ObjectStorage backed by an S3 bucket."""

    driver = "s3"

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        region: str = "",
        endpoint_url: str = "",
        client: Any = None,
    ) -> None:
        """
        Initialize S3 storage.

        Args:
            bucket: Bucket name.
            prefix: Key prefix prepended to every object name.
            region: AWS region (default chain when empty).
            endpoint_url: Custom endpoint for S3-compatible services.
            client: Pre-built boto3 S3 client (mainly for tests).
        """
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self._client = client
        self._region = region
        self._endpoint_url = endpoint_url

    def _get_client(self) -> Any:
        """Lazily create and return the boto3 S3 client."""
        if self._client is None:
            try:
                import boto3
            except ImportError:
                raise StorageError(
                    "boto3 is not installed. Install it with: pip install boto3"
                ) from None

            kwargs: dict[str, Any] = {}
            if self._region:
                kwargs["region_name"] = self._region
            if self._endpoint_url:
                kwargs["endpoint_url"] = self._endpoint_url
            self._client = boto3.client("s3", **kwargs)
        return self._client

    def _key(self, name: str) -> str:
        return f"{self.prefix}/{name}" if self.prefix else name

    def _name(self, key: str) -> str:
        if self.prefix and key.startswith(self.prefix + "/"):
            return key[len(self.prefix) + 1 :]
        return key

    def _translate(self, error: Exception, name: str) -> StorageError:
        """Map botocore errors onto the storage error hierarchy."""
        if isinstance(error, ClientError):
            code = str(error.response.get("Error", {}).get("Code", ""))
            if code in NOT_FOUND_CODES:
                return ObjectNotFoundError(name)
            return StorageTransientError(f"S3 error for {name}: {code or error}")
        return StorageTransientError(f"S3 connection error for {name}: {error}")

    def put(self, name: str, data: bytes) -> None:
        try:
            self._get_client().put_object(Bucket=self.bucket, Key=self._key(name), Body=data)
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, name) from e
        logger.debug(f"Uploaded s3://{self.bucket}/{self._key(name)} ({len(data):,} bytes)")

    def put_stream(self, name: str, stream: BinaryIO) -> None:
        try:
            self._get_client().upload_fileobj(stream, self.bucket, self._key(name))
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, name) from e

    def get(self, name: str) -> bytes:
        with closing(self.open_read(name)) as body:
            try:
                return body.read()
            except BotoCoreError as e:
                raise self._translate(e, name) from e

    def open_read(self, name: str) -> BinaryIO:
        try:
            response = self._get_client().get_object(Bucket=self.bucket, Key=self._key(name))
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, name) from e
        return response["Body"]

    def delete(self, name: str) -> bool:
        if not self.exists(name):
            return False
        try:
            self._get_client().delete_object(Bucket=self.bucket, Key=self._key(name))
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, name) from e
        return True

    def list(self, prefix: str = "") -> list[str]:
        names: list[str] = []
        paginator = self._get_client().get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=self._key(prefix)):
                for item in page.get("Contents", []):
                    names.append(self._name(item["Key"]))
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, prefix) from e
        return sorted(names)

    def size(self, name: str) -> int:
        try:
            response = self._get_client().head_object(Bucket=self.bucket, Key=self._key(name))
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, name) from e
        return int(response["ContentLength"])
