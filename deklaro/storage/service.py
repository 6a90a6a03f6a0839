"""Document storage: uploaded invoices in, gateway receipts out.

S3-compatible object storage via MinIO in deployments, local files otherwise.
The MinIO SDK is blocking, so the async entry points run it in a worker thread.

Based on MinIO Python SDK:
https://min.io/docs/minio/linux/developers/python/API.html
"""

import asyncio
import io
import logging
import mimetypes
from pathlib import Path
from typing import Protocol

from minio import Minio
from minio.error import S3Error
from minio.helpers import ObjectWriteResult
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from deklaro.shared.config import Settings
from deklaro.shared.errors import DocumentError, ExternalServiceError

logger = logging.getLogger(__name__)

_MISSING_OBJECT_CODES = frozenset({"NoSuchKey", "NoSuchBucket", "NoSuchObject"})


def _is_transient_s3_error(exc: BaseException) -> bool:
    return isinstance(exc, S3Error) and exc.code not in _MISSING_OBJECT_CODES


class StorageResult(BaseModel):
    """Result of storage operation.

    Attributes:
        success: Whether operation succeeded
        object_name: Full object path in storage
        bucket: Bucket name
        error: Error message if operation failed
        etag: Object ETag (hash) if available
        size: Object size in bytes if available
    """

    success: bool
    object_name: str | None = None
    bucket: str | None = None
    error: str | None = None
    etag: str | None = None
    size: int | None = None


class DocumentStore(Protocol):
    """What the pipeline needs from storage."""

    async def fetch(self, object_name: str) -> bytes: ...

    async def store(self, data: bytes, object_name: str, content_type: str) -> StorageResult: ...


class StorageService:
    """MinIO-backed document store."""

    def __init__(self, settings: Settings, client: Minio | None = None) -> None:
        self.settings = settings
        self._client = client
        self._bucket_exists_cache: set[str] = set()

    def _get_client(self) -> Minio:
        """Get or create the MinIO client.

        Raises:
            ValueError: If storage credentials are not configured
        """
        if self._client is None:
            if not self.settings.storage_access_key:
                raise ValueError(
                    "Storage access key not configured. "
                    "Set APP_STORAGE_ACCESS_KEY environment variable."
                )
            secret_key = self.settings.storage_secret_key.get_secret_value()
            if not secret_key:
                raise ValueError(
                    "Storage secret key not configured. "
                    "Set APP_STORAGE_SECRET_KEY environment variable."
                )

            self._client = Minio(
                endpoint=self.settings.storage_endpoint,
                access_key=self.settings.storage_access_key,
                secret_key=secret_key,
                secure=self.settings.storage_secure,
            )
            logger.info(f"MinIO client initialized for endpoint: {self.settings.storage_endpoint}")

        return self._client

    def is_available(self) -> bool:
        """True if storage is enabled and credentials are set."""
        if not self.settings.storage_enabled:
            return False
        return bool(
            self.settings.storage_access_key
            and self.settings.storage_secret_key.get_secret_value()
        )

    def health_check(self) -> bool:
        """Check if the MinIO server responds to list_buckets."""
        if not self.is_available():
            return False
        try:
            self._get_client().list_buckets()
            return True
        except (S3Error, ValueError, OSError) as e:
            logger.warning(f"Storage health check failed: {e}")
            return False

    def _ensure_bucket(self, bucket: str) -> None:
        if bucket in self._bucket_exists_cache:
            return
        client = self._get_client()
        if not client.bucket_exists(bucket):
            client.make_bucket(bucket)
            logger.info(f"Created bucket: {bucket}")
        self._bucket_exists_cache.add(bucket)

    @retry(
        retry=retry_if_exception(_is_transient_s3_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=1, max=10),
        reraise=True,
    )
    def _get_object(self, bucket: str, object_name: str) -> bytes:
        response = self._get_client().get_object(bucket_name=bucket, object_name=object_name)
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    def download_bytes(self, object_name: str, bucket: str | None = None) -> bytes:
        """Download an object.

        Raises:
            DocumentError: Object does not exist
            ExternalServiceError: Storage unreachable or failing
        """
        bucket = bucket or self.settings.storage_bucket
        try:
            data = self._get_object(bucket, object_name)
        except S3Error as e:
            if e.code in _MISSING_OBJECT_CODES:
                raise DocumentError(f"Document not found in storage: {object_name}") from e
            raise ExternalServiceError(
                f"Storage error: {e.code}", provider="storage"
            ) from e
        except OSError as e:
            raise ExternalServiceError(
                f"Storage unreachable: {type(e).__name__}", provider="storage"
            ) from e
        logger.debug(f"Downloaded {object_name} from {bucket} ({len(data)} bytes)")
        return data

    @retry(
        retry=retry_if_exception(_is_transient_s3_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=1, max=10),
        reraise=True,
    )
    def _put_object(
        self, bucket: str, object_name: str, data: bytes, content_type: str
    ) -> ObjectWriteResult:
        self._ensure_bucket(bucket)
        return self._get_client().put_object(
            bucket_name=bucket,
            object_name=object_name,
            data=io.BytesIO(data),
            length=len(data),
            content_type=content_type,
        )

    def upload_bytes(
        self,
        data: bytes,
        object_name: str,
        content_type: str | None = None,
        bucket: str | None = None,
    ) -> StorageResult:
        """Upload bytes to storage.

        Args:
            data: Bytes to upload
            object_name: Target object name in storage
            content_type: MIME type (guessed from the name if not provided)
            bucket: Target bucket (defaults to settings.storage_bucket)
        """
        bucket = bucket or self.settings.storage_bucket
        if content_type is None:
            content_type, _ = mimetypes.guess_type(object_name)
            content_type = content_type or "application/octet-stream"

        try:
            result = self._put_object(bucket, object_name, data, content_type)
        except S3Error as e:
            logger.error(f"S3 error uploading {object_name}: {e}")
            return StorageResult(
                success=False,
                object_name=object_name,
                bucket=bucket,
                error=f"S3 error: {e.code} - {e.message}",
            )
        except (ValueError, OSError) as e:
            logger.error(f"Error uploading {object_name}: {e}")
            return StorageResult(
                success=False, object_name=object_name, bucket=bucket, error=str(e)
            )

        logger.info(f"Uploaded {object_name} to {bucket} ({len(data)} bytes)")
        return StorageResult(
            success=True,
            object_name=object_name,
            bucket=bucket,
            etag=result.etag,
            size=len(data),
        )

    async def fetch(self, object_name: str) -> bytes:
        return await asyncio.to_thread(self.download_bytes, object_name)

    async def store(self, data: bytes, object_name: str, content_type: str) -> StorageResult:
        return await asyncio.to_thread(self.upload_bytes, data, object_name, content_type)


class LocalDocumentStore:
    """Filesystem store used when object storage is disabled (development, tests)."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _path(self, object_name: str) -> Path:
        path = (self.root / object_name).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise DocumentError(f"Invalid document path: {object_name}")
        return path

    async def fetch(self, object_name: str) -> bytes:
        path = self._path(object_name)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise DocumentError(f"Document not found: {object_name}") from e

    async def store(self, data: bytes, object_name: str, content_type: str) -> StorageResult:
        path = self._path(object_name)

        def write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(write)
        return StorageResult(success=True, object_name=object_name, size=len(data))
