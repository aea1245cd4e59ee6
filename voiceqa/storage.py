"""
Storage abstraction for S3-compatible object storage and in-memory testing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol
from urllib.parse import quote

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from voiceqa.errors import StorageUnavailable


class StorageClient(Protocol):
    """Defines the operations the API needs from object storage."""

    def put_file(self, src_path: str, key: str, content_type: str) -> str:
        """Upload a local file under ``key`` and return its durable URL."""
        ...


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    base_url: str = "https://example.test/storage"
    stored_objects: dict = None

    def __post_init__(self):
        if self.stored_objects is None:
            self.stored_objects = {}

    def put_file(self, src_path: str, key: str, content_type: str) -> str:
        with open(src_path, "rb") as f:
            self.stored_objects[key] = (f.read(), content_type)
        return f"{self.base_url}/{quote(key)}"

    def get_bytes(self, key: str) -> bytes:
        stored = self.stored_objects.get(key)
        if stored is None:
            raise FileNotFoundError(key)
        return stored[0]


@dataclass
class S3StorageClient:
    """
    S3 (or S3-compatible) storage client.

    Returned URLs point at the object itself; the bucket is expected to serve
    ``responses/`` publicly, or ``public_base_url`` to front it (e.g. a CDN).
    """

    bucket: str
    region: str
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    endpoint: Optional[str] = None
    public_base_url: Optional[str] = None

    def __post_init__(self):
        config = Config(signature_version="s3v4")
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    def object_url(self, key: str) -> str:
        quoted = quote(key)
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{quoted}"
        if self.endpoint:
            return f"{self.endpoint.rstrip('/')}/{self.bucket}/{quoted}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{quoted}"

    def put_file(self, src_path: str, key: str, content_type: str) -> str:
        try:
            self._client.upload_file(
                src_path,
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type},
            )
        except (BotoCoreError, ClientError, S3UploadFailedError) as exc:
            raise StorageUnavailable(f"upload of {key} failed: {exc}") from exc
        return self.object_url(key)
