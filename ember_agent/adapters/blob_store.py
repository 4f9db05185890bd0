"""HTTP object storage and print file download helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import quote, unquote, urlparse

import aiohttp

from ..config import BlobStoreConfig
from ..errors import DownloadError, UploadError

LOGGER = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


class BlobStore(Protocol):
    """Minimal object storage contract used by the logs job."""

    def url_for(self, key: str) -> str: ...

    async def put(
        self, key: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> str: ...

    async def get(self, key: str) -> bytes: ...

    async def delete(self, key: str) -> None: ...


class HttpBlobStore:
    """Bucket-style object storage addressed as ``<base_url>/<bucket>/<key>``."""

    def __init__(
        self,
        config: BlobStoreConfig,
        *,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.config = config
        self._base_url = config.base_url.rstrip("/")
        self._headers = {}
        if config.token:
            self._headers["Authorization"] = f"Bearer {config.token}"
        self._session = session
        self._owns_session = session is None

    def url_for(self, key: str) -> str:
        return f"{self._base_url}/{quote(self.config.bucket)}/{quote(key)}"

    async def put(
        self, key: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> str:
        """Store ``data`` under ``key`` and return its URL.

        Raises:
            UploadError: On transport errors or a non-2xx response.
        """

        url = self.url_for(key)
        headers = dict(self._headers)
        headers["Content-Type"] = content_type
        session = await self._ensure_session()

        try:
            async with session.put(url, data=data, headers=headers) as response:
                if response.status >= 300:
                    detail = await response.text()
                    raise UploadError(
                        f"Blob store returned {response.status} for {key}: {detail.strip()}"
                    )
        except aiohttp.ClientError as exc:
            raise UploadError(f"Blob store upload of {key} failed: {exc}") from exc
        except TimeoutError as exc:
            raise UploadError(f"Blob store upload of {key} timed out") from exc

        LOGGER.debug("Stored %d bytes at %s", len(data), url)
        return url

    async def get(self, key: str) -> bytes:
        url = self.url_for(key)
        session = await self._ensure_session()
        try:
            async with session.get(url, headers=self._headers) as response:
                if response.status >= 300:
                    raise UploadError(
                        f"Blob store returned {response.status} fetching {key}",
                        code="fetch_failed",
                    )
                return await response.read()
        except aiohttp.ClientError as exc:
            raise UploadError(
                f"Blob store fetch of {key} failed: {exc}", code="fetch_failed"
            ) from exc

    async def delete(self, key: str) -> None:
        url = self.url_for(key)
        session = await self._ensure_session()
        try:
            async with session.delete(url, headers=self._headers) as response:
                # Already gone counts as deleted
                if response.status >= 300 and response.status != 404:
                    raise UploadError(
                        f"Blob store returned {response.status} deleting {key}",
                        code="delete_failed",
                    )
        except aiohttp.ClientError as exc:
            raise UploadError(
                f"Blob store delete of {key} failed: {exc}", code="delete_failed"
            ) from exc

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session


def filename_from_url(url: str, default: str = "print_data") -> str:
    """Return the last path segment of ``url`` as a safe local filename."""

    name = unquote(urlparse(url).path.rsplit("/", 1)[-1]).strip()
    if not name or name in {".", ".."} or "/" in name or "\\" in name:
        return default
    return name


async def download_file(
    session: aiohttp.ClientSession,
    url: str,
    destination: Path,
    *,
    timeout: float = 300.0,
) -> int:
    """Stream ``url`` into ``destination`` and return the number of bytes.

    Raises:
        DownloadError: On transport errors, a non-2xx response or local I/O
            failure.
    """

    written = 0
    try:
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        async with session.get(url, timeout=client_timeout) as response:
            if response.status >= 300:
                raise DownloadError(
                    f"Download of {url} failed with HTTP {response.status}"
                )
            with destination.open("wb") as stream:
                async for chunk in response.content.iter_chunked(_CHUNK_SIZE):
                    stream.write(chunk)
                    written += len(chunk)
    except aiohttp.ClientError as exc:
        raise DownloadError(f"Download of {url} failed: {exc}") from exc
    except TimeoutError as exc:
        raise DownloadError(f"Download of {url} timed out after {timeout}s") from exc
    except OSError as exc:
        raise DownloadError(f"Unable to write {destination}: {exc}") from exc

    return written
