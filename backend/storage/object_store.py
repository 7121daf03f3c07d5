# storage/object_store.py
# ============================================================================
# APPRAISAL FULFILLMENT - OBJECT STORAGE
# ============================================================================
# Bucket storage for image backups and bulk intake sessions. The S3 client
# talks to any S3-compatible endpoint, including Google Cloud Storage through
# its interoperability API.
# ============================================================================

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger("Appraisily.ObjectStore")


class StoredObject(BaseModel):
    key: str
    size: int = 0
    content_type: str = "application/octet-stream"
    metadata: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# =============================================================================
# INTERFACE
# =============================================================================

class IObjectStore(ABC):
    """Object storage for one bucket."""

    bucket: str

    @abstractmethod
    async def put(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        metadata: Optional[dict[str, str]] = None,
    ) -> str:
        """Store an object and return its public URL."""
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        pass

    @abstractmethod
    async def list_prefix(self, prefix: str) -> list[StoredObject]:
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    async def signed_url(self, key: str, expires_in_seconds: int = 3600) -> str:
        pass

    @abstractmethod
    def public_url(self, key: str) -> str:
        pass


# =============================================================================
# S3-COMPATIBLE IMPLEMENTATION
# =============================================================================

class S3ObjectStore(IObjectStore):
    """boto3-backed store; blocking calls run in the default executor."""

    def __init__(
        self,
        bucket: str,
        endpoint_url: Optional[str] = None,
        public_base_url: str = "https://storage.googleapis.com",
        client: Any = None,
    ):
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")
        if client is None:
            import boto3
            from botocore.config import Config

            client = boto3.client(
                "s3",
                endpoint_url=endpoint_url,
                config=Config(signature_version="s3v4"),
            )
        self.s3 = client

    async def _run(self, fn):
        return await asyncio.get_running_loop().run_in_executor(None, fn)

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{self.bucket}/{key}"

    async def put(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        metadata: Optional[dict[str, str]] = None,
    ) -> str:
        def upload():
            return self.s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata={k: str(v) for k, v in (metadata or {}).items()},
            )

        await self._run(upload)
        logger.debug(f"Stored {key} in {self.bucket} ({len(data)} bytes)")
        return self.public_url(key)

    async def get(self, key: str) -> Optional[bytes]:
        from botocore.exceptions import ClientError

        def download():
            return self.s3.get_object(Bucket=self.bucket, Key=key)["Body"].read()

        try:
            return await self._run(download)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return None
            raise

    async def list_prefix(self, prefix: str) -> list[StoredObject]:
        def list_objects():
            objects = []
            paginator = self.s3.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for item in page.get("Contents", []):
                    head = self.s3.head_object(Bucket=self.bucket, Key=item["Key"])
                    objects.append(StoredObject(
                        key=item["Key"],
                        size=item.get("Size", 0),
                        content_type=head.get("ContentType", "application/octet-stream"),
                        metadata=head.get("Metadata", {}),
                        created_at=item.get("LastModified") or datetime.now(timezone.utc),
                    ))
            return objects

        return await self._run(list_objects)

    async def delete(self, key: str) -> bool:
        await self._run(lambda: self.s3.delete_object(Bucket=self.bucket, Key=key))
        return True

    async def signed_url(self, key: str, expires_in_seconds: int = 3600) -> str:
        return await self._run(lambda: self.s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in_seconds,
        ))


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryObjectStore(IObjectStore):
    """Dict-backed store for tests."""

    def __init__(self, bucket: str = "test-bucket", fail_keys: Optional[set[str]] = None):
        self.bucket = bucket
        self.objects: dict[str, tuple[bytes, StoredObject]] = {}
        # Key substrings whose writes should fail, for failure-path tests.
        self.fail_keys = fail_keys or set()
        self._lock = asyncio.Lock()

    def public_url(self, key: str) -> str:
        return f"https://storage.googleapis.com/{self.bucket}/{key}"

    async def put(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        metadata: Optional[dict[str, str]] = None,
    ) -> str:
        if any(marker in key for marker in self.fail_keys):
            raise IOError(f"Simulated storage failure for {key}")
        async with self._lock:
            self.objects[key] = (
                data,
                StoredObject(
                    key=key,
                    size=len(data),
                    content_type=content_type,
                    metadata={k: str(v) for k, v in (metadata or {}).items()},
                ),
            )
        return self.public_url(key)

    async def get(self, key: str) -> Optional[bytes]:
        async with self._lock:
            entry = self.objects.get(key)
        return entry[0] if entry else None

    async def list_prefix(self, prefix: str) -> list[StoredObject]:
        async with self._lock:
            return [meta for key, (_, meta) in sorted(self.objects.items()) if key.startswith(prefix)]

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self.objects.pop(key, None) is not None

    async def signed_url(self, key: str, expires_in_seconds: int = 3600) -> str:
        return f"{self.public_url(key)}?expires={expires_in_seconds}"
