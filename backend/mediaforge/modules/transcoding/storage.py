"""Blob storage adapters for transcoded outputs and job inputs.

Outputs are written through the universal ``Storage`` facade; boto3 calls are
blocking, so they run in a worker thread.
"""

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote, urlparse

import httpx

from mediaforge.core.storage import Storage, StorageResult
from mediaforge.modules.transcoding.ffmpeg import ProbeFailedError, TranscodingError
from mediaforge.modules.transcoding.models import OUTPUT_CACHE_CONTROL

logger = logging.getLogger(__name__)


class UploadFailedError(TranscodingError):
    """An output could not be written to blob storage."""


class InputFetchError(TranscodingError):
    """The input could not be downloaded (transient)."""


def generate_output_prefix(user_id: str, content_id: str, job_id: str) -> str:
    """Key prefix under which all outputs of a job are stored."""
    return f"processed/{user_id}/{content_id}/{job_id}"


class OutputUploader:
    """Puts local output files into blob storage by key."""

    def __init__(self, storage: Storage, cache_control: str = OUTPUT_CACHE_CONTROL):
        self.storage = storage
        self.cache_control = cache_control

    async def upload(self, file_path: str, key: str, content_type: str) -> StorageResult:
        """Upload a file and return the storage result.

        Raises:
            UploadFailedError: If the backend reports a failure
        """
        result = await asyncio.to_thread(
            self.storage.upload,
            file_path,
            key,
            content_type,
            self.cache_control,
        )
        if not result.success:
            raise UploadFailedError(f"Failed to upload {key}: {result.error_message}")

        logger.debug("Uploaded output", extra={"key": key, "file_size": result.file_size})
        return result


@dataclass
class FetchedInput:
    """A job input materialized as a local file."""
    path: str
    temporary: bool = False

    def cleanup(self) -> None:
        """Remove the file if it was downloaded for the job."""
        if not self.temporary:
            return
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove temporary input {self.path}: {e}")


class InputFetcher:
    """Materializes an input URL as a local file.

    Local paths and ``file://`` URLs are used in place. ``http(s)`` URLs are
    downloaded with httpx. Anything else is treated as a storage key.
    """

    def __init__(
        self,
        storage: Storage,
        temp_dir: str,
        timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.storage = storage
        self.download_dir = os.path.join(temp_dir, "input")
        self.timeout = timeout
        self.transport = transport

    def _temp_path(self, source: str) -> str:
        os.makedirs(self.download_dir, exist_ok=True)
        suffix = os.path.splitext(source)[1][:10]
        return os.path.join(self.download_dir, f"{uuid.uuid4().hex}{suffix}")

    async def fetch(self, url: str) -> FetchedInput:
        """Fetch an input.

        Raises:
            ProbeFailedError: If the input does not exist
            InputFetchError: If a download failed for another reason
        """
        parsed = urlparse(url)

        if parsed.scheme == "file":
            return FetchedInput(path=unquote(parsed.path))

        if parsed.scheme in ("http", "https"):
            return await self._download_http(url, parsed.path)

        if not parsed.scheme and (os.path.isabs(url) or os.path.exists(url)):
            return FetchedInput(path=url)

        return await self._download_key(url)

    async def _download_http(self, url: str, source_path: str) -> FetchedInput:
        destination = self._temp_path(source_path)
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self.transport,
            ) as client:
                async with client.stream("GET", url) as response:
                    if response.status_code == 404:
                        raise ProbeFailedError(f"Input not found: {url}")
                    response.raise_for_status()
                    with open(destination, "wb") as f:
                        async for chunk in response.aiter_bytes():
                            f.write(chunk)
        except httpx.HTTPError as e:
            FetchedInput(destination, temporary=True).cleanup()
            raise InputFetchError(f"Failed to download {url}: {e}") from e
        except ProbeFailedError:
            FetchedInput(destination, temporary=True).cleanup()
            raise

        logger.debug("Downloaded input", extra={"url": url, "path": destination})
        return FetchedInput(path=destination, temporary=True)

    async def _download_key(self, key: str) -> FetchedInput:
        destination = self._temp_path(key)
        found = await asyncio.to_thread(self.storage.download, key, destination)
        if not found:
            FetchedInput(destination, temporary=True).cleanup()
            raise ProbeFailedError(f"Input not found in storage: {key}")
        return FetchedInput(path=destination, temporary=True)
