"""
Blob storage for delivery evidence photos.

The core only stores the reference a blob store returns. Keys are derived
from the order id, so re-uploading the photo for the same delivery
overwrites the same object instead of creating a second one.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os
import boto3
from botocore.exceptions import BotoCoreError, ClientError

from delivery.core.config import get_settings
from delivery.core.exceptions import BlobStoreError
from delivery.core.logging import get_logger

logger = get_logger(__name__)

S3_SCHEME = "s3://"

CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/heic": "heic",
}


def delivery_photo_key(order_id: uuid.UUID, content_type: str = "image/jpeg") -> str:
    """Storage key for an order's evidence photo."""
    extension = CONTENT_TYPE_EXTENSIONS.get(content_type, "bin")
    return f"deliveries/{order_id}.{extension}"


class BlobStore(ABC):
    """Opaque durable storage returning a reference per stored object."""

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str) -> str:
        """
        Store data under key.

        Returns:
            Durable reference to the stored object

        Raises:
            BlobStoreError: If the object could not be stored
        """

    @abstractmethod
    async def exists(self, ref: str) -> bool:
        """
        Check whether the object behind ref is stored.

        Args:
            ref: Reference returned by put, or the bare key
        """


class LocalBlobStore(BlobStore):
    """Blob store on the local filesystem."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or get_settings().blob_local_root)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise BlobStoreError("Blob key escapes storage root", key=key)
        return path

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        path = self._path(key)
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")

        try:
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(data)
            await aiofiles.os.replace(tmp_path, path)
        except OSError as e:
            logger.error("Failed to store blob", key=key, error=str(e))
            if await aiofiles.os.path.exists(tmp_path):
                await aiofiles.os.remove(tmp_path)
            raise BlobStoreError("Failed to store blob", key=key, error=str(e)) from e

        logger.info(
            "Blob stored",
            key=key,
            size_bytes=len(data),
            content_type=content_type,
        )
        return key

    async def exists(self, ref: str) -> bool:
        try:
            path = self._path(ref)
        except BlobStoreError:
            return False
        return await aiofiles.os.path.isfile(path)


class S3BlobStore(BlobStore):
    """Blob store backed by an S3 bucket."""

    def __init__(
        self,
        bucket: Optional[str] = None,
        region_name: Optional[str] = None,
        client=None,
    ):
        settings = get_settings()
        self.bucket = bucket or settings.blob_s3_bucket
        self._client = client or boto3.client(
            "s3",
            region_name=region_name or settings.aws_region,
        )

        logger.info("S3 blob store initialized", bucket=self.bucket)

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(
                "Failed to upload blob to S3",
                bucket=self.bucket,
                key=key,
                error=str(e),
            )
            raise BlobStoreError(
                "Failed to upload blob",
                bucket=self.bucket,
                key=key,
                error=str(e),
            ) from e

        logger.info("Blob uploaded to S3", bucket=self.bucket, key=key)
        return f"{S3_SCHEME}{self.bucket}/{key}"

    def _key(self, ref: str) -> Optional[str]:
        """Object key for ref, or None when ref points at another bucket."""
        if not ref.startswith(S3_SCHEME):
            return ref
        bucket, _, key = ref[len(S3_SCHEME):].partition("/")
        return key if bucket == self.bucket and key else None

    async def exists(self, ref: str) -> bool:
        key = self._key(ref)
        if key is None:
            return False
        try:
            await asyncio.to_thread(self._client.head_object, Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise BlobStoreError(
                "Failed to check blob",
                bucket=self.bucket,
                key=key,
                error=str(e),
            ) from e
        except BotoCoreError as e:
            raise BlobStoreError(
                "Failed to check blob",
                bucket=self.bucket,
                key=key,
                error=str(e),
            ) from e


def create_blob_store() -> BlobStore:
    """Build the blob store selected by settings."""
    settings = get_settings()
    if settings.blob_backend == "s3":
        return S3BlobStore()
    return LocalBlobStore()
