"""
Object storage abstraction for S3-compatible buckets and in-memory testing.

Buckets are logical (``memories``, ``documents``); the S3 implementation maps
them to key prefixes inside one physical bucket.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from lastwishes.errors import NotFoundError, StorageError

MEMORIES_BUCKET = "memories"
DOCUMENTS_BUCKET = "documents"
KNOWN_BUCKETS = (MEMORIES_BUCKET, DOCUMENTS_BUCKET)


class StorageClient(Protocol):
    """Defines the operations the portal needs from object storage."""

    def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        *,
        content_type: Optional[str] = None,
        upsert: bool = False,
    ) -> None:
        ...

    def move(self, bucket: str, src_path: str, dest_path: str) -> None:
        ...

    def remove(self, bucket: str, paths: Iterable[str]) -> None:
        ...

    def download(self, bucket: str, path: str) -> bytes:
        ...

    def public_url(self, bucket: str, path: str) -> str:
        ...

    def exists(self, bucket: str, path: str) -> bool:
        ...


@dataclass
class StoredObject:
    data: bytes
    content_type: Optional[str] = None


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    base_url: str = "https://example.test/storage/v1/object/public"
    buckets: tuple[str, ...] = KNOWN_BUCKETS
    stored_objects: dict = field(default_factory=dict)
    # Paths whose upload/move should fail, for exercising partial failures.
    failing_paths: set = field(default_factory=set)

    def _check_bucket(self, bucket: str) -> None:
        if bucket not in self.buckets:
            raise StorageError("Bucket not found", code="bucket_not_found")

    def _check_path(self, path: str) -> None:
        if path in self.failing_paths:
            raise StorageError(f"Simulated storage failure for {path}")

    def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        *,
        content_type: Optional[str] = None,
        upsert: bool = False,
    ) -> None:
        self._check_bucket(bucket)
        self._check_path(path)
        key = (bucket, path)
        if key in self.stored_objects and not upsert:
            raise StorageError("The resource already exists", code="Duplicate")
        self.stored_objects[key] = StoredObject(data=data, content_type=content_type)

    def move(self, bucket: str, src_path: str, dest_path: str) -> None:
        self._check_bucket(bucket)
        self._check_path(src_path)
        src = (bucket, src_path)
        if src not in self.stored_objects:
            raise StorageError("The resource was not found", code="not_found")
        if (bucket, dest_path) in self.stored_objects:
            raise StorageError("The resource already exists", code="Duplicate")
        self.stored_objects[(bucket, dest_path)] = self.stored_objects.pop(src)

    def remove(self, bucket: str, paths: Iterable[str]) -> None:
        self._check_bucket(bucket)
        for path in paths:
            self.stored_objects.pop((bucket, path), None)

    def download(self, bucket: str, path: str) -> bytes:
        self._check_bucket(bucket)
        stored = self.stored_objects.get((bucket, path))
        if stored is None:
            raise NotFoundError("The resource was not found")
        return stored.data

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.base_url}/{bucket}/{quote(path)}"

    def exists(self, bucket: str, path: str) -> bool:
        return (bucket, path) in self.stored_objects

    def reset(self) -> None:
        self.stored_objects.clear()
        self.failing_paths.clear()


@dataclass
class S3StorageClient:
    """
    S3-compatible storage client. Logical buckets become key prefixes.
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str
    public_base_url: str = ""

    def __post_init__(self):
        config = Config(
            s3={"addressing_style": "virtual"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    def _key(self, bucket: str, path: str) -> str:
        if bucket not in KNOWN_BUCKETS:
            raise StorageError("Bucket not found", code="bucket_not_found")
        return f"{bucket}/{path}"

    def _exists(self, key: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(str(exc)) from exc

    def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        *,
        content_type: Optional[str] = None,
        upsert: bool = False,
    ) -> None:
        key = self._key(bucket, path)
        if not upsert and self._exists(key):
            raise StorageError("The resource already exists", code="Duplicate")
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type or "application/octet-stream",
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(str(exc)) from exc

    def move(self, bucket: str, src_path: str, dest_path: str) -> None:
        # S3 has no rename; copy then delete the source.
        src_key = self._key(bucket, src_path)
        dest_key = self._key(bucket, dest_path)
        if not self._exists(src_key):
            raise StorageError("The resource was not found", code="not_found")
        try:
            self._client.copy_object(
                Bucket=self.bucket,
                Key=dest_key,
                CopySource={"Bucket": self.bucket, "Key": src_key},
            )
            self._client.delete_object(Bucket=self.bucket, Key=src_key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(str(exc)) from exc

    def remove(self, bucket: str, paths: Iterable[str]) -> None:
        objects = [{"Key": self._key(bucket, path)} for path in paths]
        if not objects:
            return
        try:
            self._client.delete_objects(
                Bucket=self.bucket, Delete={"Objects": objects, "Quiet": True}
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(str(exc)) from exc

    def download(self, bucket: str, path: str) -> bytes:
        key = self._key(bucket, path)
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey"):
                raise NotFoundError("The resource was not found") from exc
            raise StorageError(str(exc)) from exc
        return response["Body"].read()

    def public_url(self, bucket: str, path: str) -> str:
        base = self.public_base_url.rstrip("/") if self.public_base_url else (
            f"{self.endpoint.rstrip('/')}/{self.bucket}"
        )
        return f"{base}/{bucket}/{quote(path)}"

    def exists(self, bucket: str, path: str) -> bool:
        return self._exists(self._key(bucket, path))
