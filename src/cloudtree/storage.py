"""Remote transfer endpoints for streamed objects.

This module provides:
- Abstract interface for put/get of streamed objects
- LocalFSEndpoint for development/testing
- S3Endpoint for production (OVH, AWS, MinIO)
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from cloudtree.core.config import (
    DEFAULT_COPY_BUFFER_SIZE,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_MULTIPART_CHUNKSIZE,
    DEFAULT_REGION,
)
from cloudtree.core.types import ObjectNotFoundError, RemoteTransferError

if TYPE_CHECKING:
    from typing import Any, BinaryIO

    from cloudtree.core.cancel import CancelScope
    from cloudtree.core.config import StoreConfig
    from cloudtree.stream.sink import SequentialSink

logger = logging.getLogger(__name__)


@dataclass
class Credentials:
    """Resolved credentials for a store.

    Attributes:
        access_key: Access key ID.
        secret_key: Secret access key (hidden from repr).
        token: Session token, if any.
        method: Where the credentials came from (e.g. "env", "static").
    """

    access_key: str
    secret_key: str = field(repr=False)
    token: str | None = field(default=None, repr=False)
    method: str | None = None

    @property
    def masked_access_key(self) -> str:
        """Return the access key with all but the last four characters hidden."""
        if len(self.access_key) <= 4:
            return "*" * len(self.access_key)
        return "*" * (len(self.access_key) - 4) + self.access_key[-4:]


class TransferEndpoint(ABC):
    """Abstract interface for streamed object storage."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Return a human-readable description of where objects are stored."""

    @abstractmethod
    def put(self, bucket: str, key: str, source: BinaryIO, scope: CancelScope) -> None:
        """Store an object read from a stream.

        Reads source until end-of-stream. A failed or cancelled put must not
        leave a complete-looking object behind.

        Args:
            bucket: Bucket (namespace) name.
            key: Object key.
            source: Readable stream, consumed sequentially.
            scope: Cancellation scope of the transfer.

        Raises:
            RemoteTransferError: If the store rejects the object.
            TransferCancelledError: If the scope is cancelled.
        """

    @abstractmethod
    def get(self, bucket: str, key: str, sink: SequentialSink, scope: CancelScope) -> None:
        """Retrieve an object into a sequential sink.

        Writes go through sink.write_at() at increasing, contiguous offsets,
        using a single stream.

        Raises:
            ObjectNotFoundError: If the object doesn't exist.
            RemoteTransferError: If the store fails the read.
            TransferCancelledError: If the scope is cancelled.
        """

    @abstractmethod
    def exists(self, bucket: str, key: str) -> bool:
        """Check if an object exists."""

    def resolve_credentials(self, scope: CancelScope) -> Credentials | None:
        """Resolve the credentials this endpoint authenticates with.

        Returns:
            Credentials, or None if the endpoint needs none.
        """
        return None


class LocalFSEndpoint(TransferEndpoint):
    """Local filesystem endpoint for development and testing.

    Objects are stored at <base_path>/<bucket>/<key>. Puts are written to a
    ".partial" file that is renamed into place only once complete.
    """

    def __init__(
        self, base_path: Path | str, buffer_size: int = DEFAULT_COPY_BUFFER_SIZE
    ) -> None:
        """Initialize local storage.

        Args:
            base_path: Base directory for object storage.
            buffer_size: Chunk size for reads and writes.
        """
        self._base_path = Path(base_path).resolve()
        self._base_path.mkdir(parents=True, exist_ok=True)
        self._buffer_size = buffer_size

    @property
    def location(self) -> str:
        """Return the local storage path."""
        return f"Local filesystem: {self._base_path}"

    def object_path(self, bucket: str, key: str) -> Path:
        """Get the file path for an object.

        Raises:
            RemoteTransferError: If the key would escape the bucket directory.
        """
        parts = PurePosixPath(key).parts
        if not parts or PurePosixPath(key).is_absolute() or ".." in parts:
            raise RemoteTransferError(f"Invalid object key: {key!r}")
        return self._base_path.joinpath(bucket, *parts)

    def put(self, bucket: str, key: str, source: BinaryIO, scope: CancelScope) -> None:
        """Store an object read from a stream."""
        path = self.object_path(bucket, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        partial = path.with_name(path.name + ".partial")

        total = 0
        try:
            with open(partial, "wb") as out_file:
                while True:
                    scope.raise_if_cancelled()
                    chunk = source.read(self._buffer_size)
                    if not chunk:
                        break
                    out_file.write(chunk)
                    total += len(chunk)
            os.replace(partial, path)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise

        logger.debug(f"Stored {bucket}/{key} ({total} bytes)")

    def get(self, bucket: str, key: str, sink: SequentialSink, scope: CancelScope) -> None:
        """Retrieve an object into a sequential sink."""
        path = self.object_path(bucket, key)
        if not path.is_file():
            raise ObjectNotFoundError(f"Object not found: {bucket}/{key}")

        offset = 0
        with open(path, "rb") as in_file:
            while True:
                scope.raise_if_cancelled()
                chunk = in_file.read(self._buffer_size)
                if not chunk:
                    break
                sink.write_at(chunk, offset)
                offset += len(chunk)

        logger.debug(f"Read {bucket}/{key} ({offset} bytes)")

    def exists(self, bucket: str, key: str) -> bool:
        """Check if an object exists."""
        return self.object_path(bucket, key).is_file()


class S3Endpoint(TransferEndpoint):
    """S3-compatible endpoint for production (OVH, AWS, MinIO, etc.)."""

    def __init__(
        self,
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        region: str = DEFAULT_REGION,
        multipart_chunksize: int = DEFAULT_MULTIPART_CHUNKSIZE,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        buffer_size: int = DEFAULT_COPY_BUFFER_SIZE,
    ) -> None:
        """Initialize the S3 endpoint.

        Args:
            endpoint_url: Custom endpoint URL (for OVH, MinIO, etc.).
            access_key: AWS access key ID (None for the default credential chain).
            secret_key: AWS secret access key.
            region: AWS region (default: us-east-1).
            multipart_chunksize: Part size for multipart uploads.
            max_concurrency: Parallel part uploads.
            buffer_size: Chunk size for streamed downloads.
        """
        import boto3

        self._endpoint_url = endpoint_url
        self._session: Any = boto3.session.Session(
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )
        self._client: Any = self._session.client("s3", endpoint_url=endpoint_url)
        self._multipart_chunksize = multipart_chunksize
        self._max_concurrency = max_concurrency
        self._buffer_size = buffer_size

    @property
    def location(self) -> str:
        """Return the S3 endpoint location."""
        if self._endpoint_url:
            return f"S3: {self._endpoint_url}"
        return "S3: AWS"

    def put(self, bucket: str, key: str, source: BinaryIO, scope: CancelScope) -> None:
        """Upload a stream through the transfer manager.

        The stream is not seekable, so the manager reads it part by part;
        memory use is bounded by max_concurrency * multipart_chunksize.
        """
        from boto3.s3.transfer import TransferConfig, create_transfer_manager
        from botocore.exceptions import BotoCoreError, ClientError
        from s3transfer.exceptions import CancelledError

        config = TransferConfig(
            multipart_chunksize=self._multipart_chunksize,
            max_concurrency=self._max_concurrency,
        )
        try:
            with create_transfer_manager(self._client, config) as manager:
                future = manager.upload(source, bucket, key)
                scope.on_cancel(future.cancel)
                future.result()
        except CancelledError as e:
            raise scope.error() from e
        except ClientError as e:
            raise self._translate_error(e, "put", bucket, key) from e
        except BotoCoreError as e:
            raise RemoteTransferError(f"put {bucket}/{key} failed: {e}") from e

        logger.debug(f"Uploaded s3://{bucket}/{key}")

    def get(self, bucket: str, key: str, sink: SequentialSink, scope: CancelScope) -> None:
        """Stream one GetObject body into the sink, in order."""
        from botocore.exceptions import BotoCoreError, ClientError

        scope.raise_if_cancelled()
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
        except ClientError as e:
            raise self._translate_error(e, "get", bucket, key) from e
        except BotoCoreError as e:
            raise RemoteTransferError(f"get {bucket}/{key} failed: {e}") from e

        body = response["Body"]
        scope.on_cancel(body.close)
        offset = 0
        try:
            for chunk in body.iter_chunks(self._buffer_size):
                scope.raise_if_cancelled()
                sink.write_at(chunk, offset)
                offset += len(chunk)
        except Exception as e:
            if scope.cancelled:
                raise scope.error() from e
            if isinstance(e, BotoCoreError):
                raise RemoteTransferError(f"get {bucket}/{key} failed: {e}") from e
            raise
        finally:
            body.close()

        logger.debug(f"Downloaded s3://{bucket}/{key} ({offset} bytes)")

    def exists(self, bucket: str, key: str) -> bool:
        """Check if an object exists."""
        from botocore.exceptions import ClientError

        try:
            self._client.head_object(Bucket=bucket, Key=key)
            return True
        except ClientError:
            return False

    def resolve_credentials(self, scope: CancelScope) -> Credentials | None:
        """Resolve credentials through the boto3 credential chain.

        Raises:
            RemoteTransferError: If no credentials can be found.
        """
        scope.raise_if_cancelled()
        credentials = self._session.get_credentials()
        if credentials is None:
            raise RemoteTransferError("No credentials found for the S3 endpoint")
        frozen = credentials.get_frozen_credentials()
        scope.raise_if_cancelled()
        return Credentials(
            access_key=frozen.access_key,
            secret_key=frozen.secret_key,
            token=frozen.token,
            method=getattr(credentials, "method", None),
        )

    @staticmethod
    def _translate_error(
        error: Exception, operation: str, bucket: str, key: str
    ) -> RemoteTransferError:
        code = getattr(error, "response", {}).get("Error", {}).get("Code")
        if code in ("NoSuchKey", "404", "NotFound"):
            return ObjectNotFoundError(f"Object not found: {bucket}/{key}")
        return RemoteTransferError(f"{operation} {bucket}/{key} failed: {error}")


def create_endpoint(config: StoreConfig) -> TransferEndpoint:
    """Factory function to create an endpoint from configuration.

    Args:
        config: Store configuration. A storage_path selects the local
            filesystem endpoint; otherwise S3 is used.

    Returns:
        Configured TransferEndpoint instance.
    """
    if config.storage_type == "local":
        return LocalFSEndpoint(config.storage_path or ".", buffer_size=config.copy_buffer_size)

    return S3Endpoint(
        endpoint_url=config.endpoint_url,
        access_key=config.access_key,
        secret_key=config.secret_key,
        region=config.region,
        multipart_chunksize=config.multipart_chunksize,
        max_concurrency=config.max_concurrency,
        buffer_size=config.copy_buffer_size,
    )
