"""
Durable object storage for source documents and page artifacts.

Keys are laid out per session:

    sessions/<session_id>/source.pdf
    sessions/<session_id>/page-001.png
    sessions/<session_id>/candidates.json

Writes are idempotent: putting the same key twice overwrites, so retried
uploads never create duplicates.

Backends:
    LocalArtifactStore  - directory tree (development, tests)
    MinioArtifactStore  - S3-compatible bucket via the minio client
"""

import io
import logging
import os
import tempfile
from datetime import timedelta
from pathlib import Path
from typing import Optional

from qbank.config import config
from qbank.ingest.errors import StorageError

logger = logging.getLogger(__name__)


def page_key(root: str, unit_index: int, extension: str = "png") -> str:
    """Storage key of a rendered page (unit_index is 0-based, names are 1-based)."""
    return f"{root}/page-{unit_index + 1:03d}.{extension}"


def source_key(root: str, source_name: str) -> str:
    suffix = Path(source_name).suffix.lower() or ".pdf"
    return f"{root}/source{suffix}"


def candidates_key(root: str) -> str:
    return f"{root}/candidates.json"


class ArtifactStore:
    """Interface shared by storage backends."""

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        raise NotImplementedError

    def get(self, key: str) -> bytes:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def url_for(self, key: str) -> Optional[str]:
        """Public or presigned URL, or None when the backend has no URL form."""
        return None


class LocalArtifactStore(ArtifactStore):
    """Stores artifacts as files under a base directory."""

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = Path(base_dir or config.ARTIFACT_DIR)

    def _path(self, key: str) -> Path:
        path = (self.base_dir / key).resolve()
        if self.base_dir.resolve() not in path.parents:
            raise StorageError(f"Key escapes artifact directory: {key}", retryable=False)
        return path

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Write-then-rename so readers never see a partial artifact
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, path)
        except OSError as e:
            raise StorageError(f"Failed to store {key}: {e}") from e

    def get(self, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e}") from e

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()


class MinioArtifactStore(ArtifactStore):
    """S3-compatible object storage backend."""

    def __init__(
        self,
        endpoint: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        bucket: Optional[str] = None,
        secure: Optional[bool] = None,
        url_expiry: timedelta = timedelta(hours=12),
        client=None,
    ):
        """
        Initialize MinIO store.

        Args:
            endpoint: host:port of the MinIO/S3 endpoint
            access_key: Access key (from config if not provided)
            secret_key: Secret key (from config if not provided)
            bucket: Bucket name (created on first use if missing)
            secure: Use HTTPS
            url_expiry: Lifetime of presigned GET URLs handed to extraction
            client: Pre-built minio.Minio client (tests)
        """
        self.bucket = bucket or config.MINIO_BUCKET
        self.url_expiry = url_expiry
        self._endpoint = endpoint or config.MINIO_ENDPOINT
        self._access_key = access_key or config.MINIO_ACCESS_KEY
        self._secret_key = secret_key or config.MINIO_SECRET_KEY
        self._secure = config.MINIO_SECURE if secure is None else secure
        self._client = client
        self._bucket_checked = False

    @property
    def client(self):
        """Lazy load MinIO client."""
        if self._client is None:
            from minio import Minio

            self._client = Minio(
                self._endpoint,
                access_key=self._access_key,
                secret_key=self._secret_key,
                secure=self._secure,
            )
        return self._client

    def _ensure_bucket(self) -> None:
        if self._bucket_checked:
            return
        from minio.error import S3Error

        try:
            if not self.client.bucket_exists(self.bucket):
                self.client.make_bucket(self.bucket)
                logger.info(f"Created bucket: {self.bucket}")
        except S3Error as e:
            raise StorageError(f"Bucket check failed for {self.bucket}: {e}") from e
        self._bucket_checked = True

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        from minio.error import S3Error

        self._ensure_bucket()
        try:
            self.client.put_object(
                bucket_name=self.bucket,
                object_name=key,
                data=io.BytesIO(data),
                length=len(data),
                content_type=content_type,
            )
        except (S3Error, OSError) as e:
            raise StorageError(f"Upload failed for {key}: {e}") from e

    def get(self, key: str) -> bytes:
        from minio.error import S3Error

        response = None
        try:
            response = self.client.get_object(self.bucket, key)
            return response.read()
        except (S3Error, OSError) as e:
            raise StorageError(f"Download failed for {key}: {e}") from e
        finally:
            if response is not None:
                response.close()
                response.release_conn()

    def exists(self, key: str) -> bool:
        from minio.error import S3Error

        self._ensure_bucket()
        try:
            self.client.stat_object(self.bucket, key)
            return True
        except S3Error as e:
            if e.code in ("NoSuchKey", "NoSuchObject", "ResourceNotFound"):
                return False
            raise StorageError(f"Stat failed for {key}: {e}") from e

    def url_for(self, key: str) -> Optional[str]:
        return self.client.presigned_get_object(self.bucket, key, expires=self.url_expiry)


def get_artifact_store(backend: Optional[str] = None) -> ArtifactStore:
    """Build the artifact store selected by STORAGE_BACKEND."""
    backend = (backend or config.STORAGE_BACKEND).lower()
    if backend == "minio":
        return MinioArtifactStore()
    if backend == "local":
        return LocalArtifactStore()
    raise ValueError(f"Unknown storage backend: {backend}")
