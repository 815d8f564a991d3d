from abc import ABC, abstractmethod

import httpx

from genqueue.config import settings
from genqueue.errors import UploadError


class MediaUploader(ABC):
    """Copies generated media into durable storage and returns its public URL."""

    @abstractmethod
    async def upload_from_url(self, source_url: str, key: str) -> str:
        ...

    @abstractmethod
    async def upload_bytes(self, data: bytes, key: str, content_type: str) -> str:
        ...


class HttpMediaUploader(MediaUploader):
    def __init__(
        self,
        base_url: str | None = None,
        public_url: str | None = None,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.storage_base_url).rstrip("/")
        self.public_url = (public_url or settings.storage_public_url).rstrip("/")
        self.api_key = settings.storage_api_key if api_key is None else api_key
        self.transport = transport

    def _headers(self, content_type: str) -> dict:
        headers = {"Content-Type": content_type}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def upload_from_url(self, source_url: str, key: str) -> str:
        try:
            async with httpx.AsyncClient(
                timeout=settings.upload_timeout_sec, follow_redirects=True, transport=self.transport
            ) as client:
                src = await client.get(source_url)
                src.raise_for_status()
        except httpx.HTTPError as exc:
            raise UploadError(f"download failed for {source_url}: {exc}") from exc
        content_type = src.headers.get("content-type", "application/octet-stream")
        return await self.upload_bytes(src.content, key, content_type)

    async def upload_bytes(self, data: bytes, key: str, content_type: str) -> str:
        try:
            async with httpx.AsyncClient(timeout=settings.upload_timeout_sec, transport=self.transport) as client:
                r = await client.put(f"{self.base_url}/{key}", content=data, headers=self._headers(content_type))
                r.raise_for_status()
        except httpx.HTTPError as exc:
            raise UploadError(f"upload failed for {key}: {exc}") from exc
        return f"{self.public_url}/{key}"
