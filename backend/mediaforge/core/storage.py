"""Blob storage for transcoded outputs and submitted inputs.

Backends: local filesystem, S3, MinIO and other S3-compatible stores.
Outputs are written with their content type and Cache-Control header and
served through the CDN when one is enabled.
"""

import os
import shutil
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from mediaforge.core.config import Settings, settings as default_settings


@dataclass
class StorageResult:
    """Result of a storage operation."""
    success: bool
    key: str
    url: str
    file_size: int = 0
    etag: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class StorageConfig:
    """Storage configuration."""
    backend: str  # local, s3, minio
    bucket: str = ""
    region: str = ""
    access_key: str = ""
    secret_key: str = ""
    endpoint_url: Optional[str] = None
    use_ssl: bool = True
    local_path: str = "./storage"
    cdn_domain: Optional[str] = None
    cdn_enabled: bool = False

    @classmethod
    def from_settings(cls, settings: Settings = default_settings) -> "StorageConfig":
        return cls(
            backend=settings.STORAGE_BACKEND,
            bucket=settings.STORAGE_BUCKET,
            region=settings.STORAGE_REGION,
            access_key=settings.STORAGE_ACCESS_KEY,
            secret_key=settings.STORAGE_SECRET_KEY,
            endpoint_url=settings.STORAGE_ENDPOINT_URL,
            use_ssl=settings.STORAGE_USE_SSL,
            local_path=settings.LOCAL_STORAGE_PATH,
            cdn_domain=settings.CDN_DOMAIN,
            cdn_enabled=settings.CDN_ENABLED,
        )


class StorageBackend(ABC):
    """Abstract base class for storage backends."""

    @abstractmethod
    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
        cache_control: Optional[str] = None,
    ) -> StorageResult:
        """Upload a file to storage."""
        pass

    @abstractmethod
    def download(self, key: str, destination: str) -> bool:
        """Download a file from storage."""
        pass

    @abstractmethod
    def get_url(self, key: str) -> str:
        """Public URL for a stored key."""
        pass


class LocalStorage(StorageBackend):
    """Local filesystem storage backend."""

    def __init__(self, config: StorageConfig):
        self.base_path = Path(config.local_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.cdn_domain = config.cdn_domain
        self.cdn_enabled = config.cdn_enabled

    def _get_full_path(self, key: str) -> Path:
        return self.base_path / key

    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
        cache_control: Optional[str] = None,
    ) -> StorageResult:
        """Upload a file to local storage."""
        try:
            dest_path = self._get_full_path(key)
            dest_path.parent.mkdir(parents=True, exist_ok=True)

            shutil.copy2(file_path, dest_path)
            file_size = dest_path.stat().st_size

            return StorageResult(
                success=True,
                key=key,
                url=self.get_url(key),
                file_size=file_size,
            )
        except OSError as e:
            return StorageResult(
                success=False,
                key=key,
                url="",
                error_message=str(e),
            )

    def download(self, key: str, destination: str) -> bool:
        """Download a file from local storage."""
        try:
            src_path = self._get_full_path(key)
            if src_path.exists():
                shutil.copy2(src_path, destination)
                return True
            return False
        except OSError:
            return False

    def get_url(self, key: str) -> str:
        """Get URL for a file."""
        if self.cdn_enabled and self.cdn_domain:
            return f"https://{self.cdn_domain}/{key}"
        return f"file://{self._get_full_path(key).absolute()}"


class S3Storage(StorageBackend):
    """S3/MinIO compatible storage backend."""

    def __init__(self, config: StorageConfig):
        self.config = config
        self._client = None

    def _get_client(self):
        """Get or create S3 client."""
        if self._client is None:
            import boto3
            from botocore.config import Config as BotoConfig

            client_kwargs = {
                "service_name": "s3",
                "region_name": self.config.region or "us-east-1",
                "aws_access_key_id": self.config.access_key or None,
                "aws_secret_access_key": self.config.secret_key or None,
            }

            # For MinIO or other S3-compatible storage
            if self.config.endpoint_url:
                client_kwargs["endpoint_url"] = self.config.endpoint_url
                client_kwargs["config"] = BotoConfig(
                    signature_version="s3v4",
                    s3={"addressing_style": "path"},
                )

            if not self.config.use_ssl and self.config.endpoint_url:
                # Allow non-SSL for local MinIO
                client_kwargs["use_ssl"] = False

            self._client = boto3.client(**client_kwargs)

        return self._client

    def _put_kwargs(self, key: str, content_type: str, cache_control: Optional[str]) -> dict:
        kwargs = {
            "Bucket": self.config.bucket,
            "Key": key,
            "ContentType": content_type,
        }
        if cache_control:
            kwargs["CacheControl"] = cache_control
        return kwargs

    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
        cache_control: Optional[str] = None,
    ) -> StorageResult:
        """Upload a file to S3/MinIO."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            client = self._get_client()
            file_size = os.path.getsize(file_path)

            with open(file_path, "rb") as f:
                response = client.put_object(
                    Body=f,
                    **self._put_kwargs(key, content_type, cache_control),
                )

            etag = response.get("ETag", "").strip('"')

            return StorageResult(
                success=True,
                key=key,
                url=self.get_url(key),
                file_size=file_size,
                etag=etag,
            )
        except (BotoCoreError, ClientError, OSError) as e:
            return StorageResult(
                success=False,
                key=key,
                url="",
                error_message=str(e),
            )

    def download(self, key: str, destination: str) -> bool:
        """Download a file from S3/MinIO."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            client = self._get_client()
            client.download_file(self.config.bucket, key, destination)
            return True
        except (BotoCoreError, ClientError, OSError):
            return False

    def get_url(self, key: str) -> str:
        """Get the public URL for a file.

        Transcoded outputs are served through the CDN, so the CDN domain wins
        when enabled; otherwise the bucket endpoint URL is returned.
        """
        if self.config.cdn_enabled and self.config.cdn_domain:
            return f"https://{self.config.cdn_domain}/{key}"

        if self.config.endpoint_url:
            return f"{self.config.endpoint_url.rstrip('/')}/{self.config.bucket}/{key}"
        region = self.config.region or "us-east-1"
        return f"https://{self.config.bucket}.s3.{region}.amazonaws.com/{key}"


class Storage:
    """Universal storage interface.

    Automatically selects the appropriate backend based on configuration.
    """

    def __init__(self, config: Optional[StorageConfig] = None):
        """Initialize storage with configuration.

        Args:
            config: Storage configuration (uses settings if not provided)
        """
        if config is None:
            config = StorageConfig.from_settings()

        self.config = config
        self._backend = self._create_backend(config)

    def _create_backend(self, config: StorageConfig) -> StorageBackend:
        backend_type = config.backend.lower()

        if backend_type == "local":
            return LocalStorage(config)
        elif backend_type in ("s3", "minio", "aws"):
            return S3Storage(config)
        else:
            raise ValueError(f"Unsupported storage backend: {backend_type}")

    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
        cache_control: Optional[str] = None,
    ) -> StorageResult:
        """Upload a file to storage."""
        return self._backend.upload(file_path, key, content_type, cache_control)

    def download(self, key: str, destination: str) -> bool:
        """Download a file from storage."""
        return self._backend.download(key, destination)

    def get_url(self, key: str) -> str:
        """Get URL for a file."""
        return self._backend.get_url(key)


def remove_stale_files(root: str, max_age_seconds: float) -> list[str]:
    """Delete files under ``root`` whose mtime is older than ``max_age_seconds``.

    Empty directories past the same age are removed too. Returns the deleted
    file paths. Files that vanish mid-scan are ignored; any other OSError
    propagates to the caller.
    """
    cutoff = time.time() - max_age_seconds
    removed: list[str] = []
    base = Path(root)
    if not base.exists():
        return removed

    for path in sorted(base.rglob("*"), key=lambda p: len(p.parts), reverse=True):
        try:
            if path.stat().st_mtime >= cutoff:
                continue
            if path.is_file():
                path.unlink()
                removed.append(str(path))
            elif path.is_dir() and not any(path.iterdir()):
                path.rmdir()
        except FileNotFoundError:
            # Removed concurrently by its owner
            continue
    return removed
