import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel, Field

from genqueue.config import settings
from genqueue.errors import ProviderError, ProviderTimeoutError


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    TEXT = "text"


class GenerationRequest(BaseModel):
    kind: MediaKind
    prompt: str
    params: dict[str, Any] = Field(default_factory=dict)


class GeneratedMedia(BaseModel):
    url: str
    content_type: str | None = None
    width: int | None = None
    height: int | None = None
    duration_ms: int | None = None


class GenerationResult(BaseModel):
    media: list[GeneratedMedia] = Field(default_factory=list)
    text: str | None = None


class GenerationProvider(ABC):
    """Opaque capability that turns a prompt into media or text."""

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GenerationResult:
        ...


class HttpGenerationProvider(GenerationProvider):
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout_sec: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.provider_base_url).rstrip("/")
        self.api_key = settings.provider_api_key if api_key is None else api_key
        self.timeout_sec = timeout_sec or settings.provider_timeout_sec
        self.transport = transport

    def _headers(self) -> dict:
        if not self.api_key:
            raise ProviderError("PROVIDER_API_KEY is not set")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _post(self, path: str, body: dict) -> dict:
        last_err: Exception | None = None
        for attempt in range(3):
            try:
                async with httpx.AsyncClient(timeout=self.timeout_sec, transport=self.transport) as client:
                    r = await client.post(f"{self.base_url}{path}", headers=self._headers(), json=body)
                    r.raise_for_status()
                    return r.json()
            except httpx.TimeoutException as exc:
                last_err = ProviderTimeoutError(f"provider_timeout: {exc}")
            except httpx.HTTPStatusError as exc:
                code = exc.response.status_code
                if code in {429, 500, 502, 503, 504}:
                    last_err = ProviderError(f"transient_http_{code}")
                else:
                    raise ProviderError(f"http_{code}: {exc.response.text[:300]}") from exc
            except httpx.HTTPError as exc:
                last_err = ProviderError(str(exc))

            await asyncio.sleep(0.6 * (attempt + 1))

        assert last_err is not None
        raise last_err

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        data = await self._post(
            f"/generate/{request.kind.value}",
            {"prompt": request.prompt, **request.params},
        )
        try:
            result = GenerationResult.model_validate(data)
        except ValueError as exc:
            raise ProviderError(f"invalid_provider_response: {str(data)[:250]}") from exc
        if request.kind == MediaKind.TEXT and not result.text:
            raise ProviderError("provider returned no text")
        if request.kind != MediaKind.TEXT and not result.media:
            raise ProviderError(f"provider returned no {request.kind.value}")
        return result
