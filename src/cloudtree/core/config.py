"""Configuration classes for cloudtree.

This module defines the remote store configuration shared by the transfer
session, the endpoint factory and the CLI.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

# Transfer tuning defaults
DEFAULT_REGION = "us-east-1"
DEFAULT_MULTIPART_CHUNKSIZE = 8 * 1024 * 1024  # 8 MB
DEFAULT_MAX_CONCURRENCY = 4
DEFAULT_COPY_BUFFER_SIZE = 64 * 1024  # 64 KB


@dataclass
class StoreConfig:
    """Configuration for connecting to a blob store.

    Attributes:
        bucket: Bucket (namespace) holding the objects.
        endpoint_url: Custom endpoint URL (for OVH, MinIO, etc.).
        region: Store region.
        access_key: Access key ID (None to use the default credential chain).
        secret_key: Secret access key.
        storage_path: Base directory for the local filesystem store. When set,
            the local store is used instead of S3.
        multipart_chunksize: Part size for multipart uploads.
        max_concurrency: Parallel part uploads. Downloads always use one stream.
        copy_buffer_size: Chunk size used when copying between pipeline stages.
    """

    bucket: str = ""
    endpoint_url: str | None = None
    region: str = DEFAULT_REGION
    access_key: str | None = None
    secret_key: str | None = None
    storage_path: str | None = None
    multipart_chunksize: int = DEFAULT_MULTIPART_CHUNKSIZE
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    copy_buffer_size: int = DEFAULT_COPY_BUFFER_SIZE

    def __post_init__(self) -> None:
        """Normalize empty strings to None."""
        self.endpoint_url = self.endpoint_url or None
        self.access_key = self.access_key or None
        self.secret_key = self.secret_key or None
        self.storage_path = self.storage_path or None
        self.region = self.region or DEFAULT_REGION

    @property
    def storage_type(self) -> str:
        """Return "local" when a storage path is configured, else "s3"."""
        return "local" if self.storage_path else "s3"

    @property
    def has_static_credentials(self) -> bool:
        """Check if both halves of a static key pair are configured."""
        return bool(self.access_key and self.secret_key)

    @classmethod
    def from_environment(cls) -> StoreConfig:
        """Build configuration from environment variables.

        Reads AWS_S3_BUCKET, AWS_S3_ENDPOINT, AWS_S3_REGION,
        AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY and CLOUDTREE_STORAGE_PATH.
        """
        return cls(
            bucket=os.environ.get("AWS_S3_BUCKET", ""),
            endpoint_url=os.environ.get("AWS_S3_ENDPOINT"),
            region=os.environ.get("AWS_S3_REGION", DEFAULT_REGION),
            access_key=os.environ.get("AWS_ACCESS_KEY_ID"),
            secret_key=os.environ.get("AWS_SECRET_ACCESS_KEY"),
            storage_path=os.environ.get("CLOUDTREE_STORAGE_PATH"),
        )
