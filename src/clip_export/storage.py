"""Blob storage for uploaded sources and rendered clips.

Supports: local filesystem and S3-compatible object storage (AWS S3,
Cloudflare R2, MinIO).
"""

import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .errors import StorageError
from .models import StorageConfig

logger = logging.getLogger(__name__)

VIDEO_CONTENT_TYPE = "video/mp4"


class BlobStore(ABC):
    """Abstract base class for blob storage backends."""

    @abstractmethod
    def upload(self, local_path: str, key: str, content_type: str = VIDEO_CONTENT_TYPE) -> None:
        """Copy a local file to the store under key.

        Raises:
            StorageError: if the file cannot be stored
        """
        pass

    @abstractmethod
    def download(self, key: str, local_path: str) -> None:
        """Copy the blob at key to a local file.

        Raises:
            StorageError: if the key is missing or the copy fails
        """
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if a blob exists."""
        pass

    @abstractmethod
    def get_url(self, key: str, expires_in: int = 3600) -> str:
        """Retrieval URL for a blob (presigned for private storage)."""
        pass

    @abstractmethod
    def get_upload_url(
        self, key: str, expires_in: int = 3600, content_type: str = VIDEO_CONTENT_TYPE
    ) -> str:
        """URL a client can PUT the file body to, bypassing the API for remote stores."""
        pass


class LocalBlobStore(BlobStore):
    """Filesystem-backed store rooted at one directory."""

    def __init__(
        self,
        root: str,
        url_base: str = "/storage/download",
        upload_url_base: str = "/storage/upload",
    ):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.url_base = url_base
        self.upload_url_base = upload_url_base

    def path_for(self, key: str) -> Path:
        """Resolve key to a path inside root.

        Raises:
            StorageError: if the key escapes the root directory
        """
        if not key:
            raise StorageError("Empty storage key")
        path = (self.root / key).resolve()
        if path != self.root and self.root not in path.parents:
            raise StorageError(f"Storage key escapes root: {key}")
        return path

    def upload(self, local_path: str, key: str, content_type: str = VIDEO_CONTENT_TYPE) -> None:
        dest_path = self.path_for(key)
        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(local_path, dest_path)
        except OSError as e:
            raise StorageError(f"Failed to store {key}: {e}") from e
        logger.debug("Stored %s (%d bytes)", key, dest_path.stat().st_size)

    def download(self, key: str, local_path: str) -> None:
        src_path = self.path_for(key)
        if not src_path.is_file():
            raise StorageError(f"Blob not found: {key}")
        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(src_path, local_path)
        except OSError as e:
            raise StorageError(f"Failed to fetch {key}: {e}") from e

    def exists(self, key: str) -> bool:
        try:
            return self.path_for(key).is_file()
        except StorageError:
            return False

    def get_url(self, key: str, expires_in: int = 3600) -> str:
        return f"{self.url_base}?key={quote(key, safe='')}"

    def get_upload_url(
        self, key: str, expires_in: int = 3600, content_type: str = VIDEO_CONTENT_TYPE
    ) -> str:
        self.path_for(key)
        return f"{self.upload_url_base}?key={quote(key, safe='')}"


class S3BlobStore(BlobStore):
    """S3-compatible storage backend."""

    def __init__(self, config: StorageConfig, client=None):
        self.config = config
        self._client = client

    def _get_client(self):
        """Get or create S3 client."""
        if self._client is None:
            client_kwargs = {
                "service_name": "s3",
                "region_name": self.config.region,
                "aws_access_key_id": self.config.access_key,
                "aws_secret_access_key": self.config.secret_key,
            }

            # R2, MinIO and friends
            if self.config.endpoint_url:
                client_kwargs["endpoint_url"] = self.config.endpoint_url
                client_kwargs["config"] = BotoConfig(
                    signature_version="s3v4",
                    s3={"addressing_style": "path"},
                )

            self._client = boto3.client(**client_kwargs)

        return self._client

    def upload(self, local_path: str, key: str, content_type: str = VIDEO_CONTENT_TYPE) -> None:
        try:
            self._get_client().upload_file(
                local_path,
                self.config.bucket,
                key,
                ExtraArgs={"ContentType": content_type},
            )
        except (BotoCoreError, ClientError, OSError) as e:
            raise StorageError(f"Failed to upload {key}: {e}") from e

    def download(self, key: str, local_path: str) -> None:
        try:
            self._get_client().download_file(self.config.bucket, key, local_path)
        except (BotoCoreError, ClientError, OSError) as e:
            raise StorageError(f"Failed to download {key}: {e}") from e

    def exists(self, key: str) -> bool:
        try:
            self._get_client().head_object(Bucket=self.config.bucket, Key=key)
            return True
        except ClientError:
            return False

    def get_url(self, key: str, expires_in: int = 3600) -> str:
        try:
            return self._get_client().generate_presigned_url(
                "get_object",
                Params={"Bucket": self.config.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to sign URL for {key}: {e}") from e

    def get_upload_url(
        self, key: str, expires_in: int = 3600, content_type: str = VIDEO_CONTENT_TYPE
    ) -> str:
        try:
            return self._get_client().generate_presigned_url(
                "put_object",
                Params={"Bucket": self.config.bucket, "Key": key, "ContentType": content_type},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to sign upload URL for {key}: {e}") from e


def create_blob_store(config: Optional[StorageConfig] = None) -> BlobStore:
    """Build the backend named by config.backend."""
    config = config or StorageConfig()

    if config.backend == "local":
        return LocalBlobStore(
            config.local_path,
            url_base=config.download_url_base,
            upload_url_base=config.upload_url_base,
        )
    if config.backend == "s3":
        if not config.bucket:
            raise ValueError("storage.bucket is required for the s3 backend")
        return S3BlobStore(config)

    raise ValueError(f"Unknown storage backend: {config.backend}")
