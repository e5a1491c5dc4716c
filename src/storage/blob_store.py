"""MinIO blob storage for original uploaded files."""

import asyncio
import logging
import re
from io import BytesIO
from urllib.parse import quote, unquote

from minio import Minio
from minio.error import MinioException
from urllib3.exceptions import HTTPError as TransportError

from src.core.config import get_settings
from src.core.exceptions import BlobDeleteFailure, BlobUploadFailure

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[\[\]()<>{}\"'\\]")
_WHITESPACE = re.compile(r"\s+")


def sanitize_file_name(file_name: str) -> str:
    """Strip brackets, quotes and backslashes; whitespace runs become '-'."""
    cleaned = _UNSAFE_CHARS.sub("", file_name)
    return _WHITESPACE.sub("-", cleaned.strip())


def build_object_path(tenant_id: str, user_id: str, file_name: str, epoch_ms: int) -> str:
    return f"knowledge/{tenant_id}/{user_id}/{epoch_ms}-{sanitize_file_name(file_name)}"


class BlobStore:
    """Thin async wrapper over the (blocking) MinIO client."""

    def __init__(self, client: Minio, bucket: str, public_base_url: str):
        self.client = client
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")
        self._bucket_ready = False

    def _ensure_bucket(self) -> None:
        if self._bucket_ready:
            return
        if not self.client.bucket_exists(bucket_name=self.bucket):
            logger.info(f"[BlobStore] Creating bucket '{self.bucket}'")
            self.client.make_bucket(bucket_name=self.bucket)
        self._bucket_ready = True

    def _put(self, path: str, data: bytes, content_type: str) -> None:
        self._ensure_bucket()
        self.client.put_object(
            bucket_name=self.bucket,
            object_name=path,
            data=BytesIO(data),
            length=len(data),
            content_type=content_type,
        )

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        """Store `data` at `path` and return its public URL.

        Raises:
            BlobUploadFailure: MinIO rejected the write or was unreachable
        """
        try:
            await asyncio.to_thread(self._put, path, data, content_type)
        except (MinioException, TransportError, OSError) as e:
            logger.error(f"[BlobStore] Upload of {path} failed: {e}")
            raise BlobUploadFailure(f"Failed to upload file: {e}", {"path": path}) from e
        return self.public_url(path)

    def public_url(self, path: str) -> str:
        return f"{self.public_base_url}/{self.bucket}/{quote(path)}"

    def object_path(self, file_url: str) -> str | None:
        """Inverse of `public_url`; None for URLs outside this bucket."""
        prefix = f"{self.public_base_url}/{self.bucket}/"
        if not file_url.startswith(prefix):
            return None
        return unquote(file_url[len(prefix) :]) or None

    async def delete(self, path: str) -> None:
        """Remove the object at `path`.

        Raises:
            BlobDeleteFailure: MinIO rejected the delete or was unreachable
        """
        try:
            await asyncio.to_thread(self.client.remove_object, bucket_name=self.bucket, object_name=path)
        except (MinioException, TransportError, OSError) as e:
            raise BlobDeleteFailure(f"Failed to delete file: {e}", {"path": path}) from e

    async def is_available(self) -> bool:
        try:
            await asyncio.to_thread(self.client.bucket_exists, bucket_name=self.bucket)
        except (MinioException, TransportError, OSError) as e:
            logger.warning(f"[BlobStore] Health check failed: {e}")
            return False
        return True


# Singleton instance
_blob_store: BlobStore | None = None


def get_blob_store() -> BlobStore:
    """Get or create the global BlobStore instance."""
    global _blob_store
    if _blob_store is None:
        settings = get_settings()
        client = Minio(
            endpoint=settings.minio_endpoint,
            access_key=settings.minio_access_key,
            secret_key=settings.minio_secret_key,
            secure=settings.minio_secure,
        )
        _blob_store = BlobStore(client, settings.minio_bucket, settings.minio_public_url)
    return _blob_store
