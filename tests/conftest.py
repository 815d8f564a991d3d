import pytest

from genqueue import config
from genqueue.db import init_db
from genqueue.handlers.registry import build_registry
from genqueue.providers import GeneratedMedia, GenerationProvider, GenerationRequest, GenerationResult, MediaKind
from genqueue.uploads import MediaUploader


class FakeProvider(GenerationProvider):
    def __init__(self) -> None:
        self.calls: list[GenerationRequest] = []
        self.fail_with: Exception | None = None
        self.text = '[{"description": "Alice walks to the harbor", "visual_prompt": "wide shot"}]'

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.calls.append(request)
        if self.fail_with:
            raise self.fail_with
        if request.kind == MediaKind.TEXT:
            return GenerationResult(text=self.text)
        count = int(request.params.get("num_images", 1))
        return GenerationResult(
            media=[GeneratedMedia(url=f"https://provider.test/{request.kind.value}/{i}") for i in range(count)]
        )


class FakeUploader(MediaUploader):
    def __init__(self) -> None:
        self.uploads: dict[str, object] = {}
        self.fail_with: Exception | None = None

    async def upload_from_url(self, source_url: str, key: str) -> str:
        if self.fail_with:
            raise self.fail_with
        self.uploads[key] = source_url
        return f"https://cdn.test/{key}"

    async def upload_bytes(self, data: bytes, key: str, content_type: str) -> str:
        if self.fail_with:
            raise self.fail_with
        self.uploads[key] = data
        return f"https://cdn.test/{key}"


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    monkeypatch.setattr(config.settings, "database_path", str(tmp_path / "genqueue.db"))
    monkeypatch.setattr(config.settings, "admin_api_token", "test-admin-token")
    monkeypatch.setattr(config.settings, "max_active_jobs_per_owner", 10)
    monkeypatch.setattr(config.settings, "image_credit_cost", 8)
    monkeypatch.setattr(config.settings, "execute_inline", False)

    init_db()
    yield


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def uploader() -> FakeUploader:
    return FakeUploader()


@pytest.fixture
def registry(provider, uploader):
    return build_registry(provider, uploader)
