from abc import abstractmethod
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, Field

from genqueue.config import settings
from genqueue.handlers.base import JobHandler, ProgressReporter
from genqueue.models import Charge, Job, JobType
from genqueue.providers import GenerationProvider, GenerationRequest, MediaKind
from genqueue.uploads import MediaUploader


class ImageGenerationInput(BaseModel):
    prompt: str = Field(min_length=1, max_length=4000)
    num_images: int = Field(default=1, ge=1, le=4)
    aspect_ratio: str = "16:9"
    source_image_urls: list[str] = Field(default_factory=list, max_length=8)
    asset_id: str | None = None


class VideoGenerationInput(BaseModel):
    prompt: str = Field(min_length=1, max_length=4000)
    image_url: str | None = None
    duration_ms: int = Field(default=5000, gt=0, le=10000)
    shot_id: str | None = None


class AudioGenerationInput(BaseModel):
    prompt: str = Field(min_length=1, max_length=2000)
    audio_type: Literal["sound_effect", "music"] = "sound_effect"
    duration_ms: int | None = Field(default=None, gt=0)


def billed_video_seconds(duration_ms: int) -> int:
    return 10 if duration_ms > 5000 else 5


class MediaGenerationHandler(JobHandler):
    """Spend-backed provider call followed by an upload of every produced file."""

    media_kind: ClassVar[MediaKind]
    extension: ClassVar[str]

    def __init__(self, provider: GenerationProvider, uploader: MediaUploader) -> None:
        self.provider = provider
        self.uploader = uploader

    @abstractmethod
    def build_request(self, inp: Any) -> GenerationRequest:
        ...

    def summarize(self, inp: Any, media: list[dict[str, Any]]) -> dict[str, Any]:
        return {}

    async def run(self, job: Job, report: ProgressReporter, charge: Charge | None) -> dict[str, Any]:
        inp = self.parse_input(job)
        try:
            await report(10, 1, f"Preparing {self.media_kind.value} generation")
            await report(20, 1, f"Generating {self.media_kind.value}")
            result = await self.provider.generate(self.build_request(inp))
            total = len(result.media)
            await report(50, 2, f"Generated {total} file(s)")

            media = []
            for i, item in enumerate(result.media):
                key = f"{job.owner_id}/{self.media_kind.value}/{job.job_id}-{i}.{self.extension}"
                url = await self.uploader.upload_from_url(item.url, key)
                media.append(item.model_dump(exclude_none=True) | {"url": url, "source_url": item.url})
                await report(50 + (45 * (i + 1)) // total, 3, f"Uploaded {i + 1}/{total}")
        except Exception as exc:
            await self.compensate(charge, exc)
            raise

        return {
            "media": media,
            "media_count": len(media),
            "credits_charged": charge.amount if charge else 0,
            **self.summarize(inp, media),
        }


class ImageGenerationHandler(MediaGenerationHandler):
    job_type = JobType.IMAGE_GENERATION
    input_model = ImageGenerationInput
    media_kind = MediaKind.IMAGE
    extension = "png"

    def cost(self, job: Job) -> int:
        return settings.image_credit_cost * self.parse_input(job).num_images

    def charge_metadata(self, job: Job) -> dict[str, Any]:
        inp = self.parse_input(job)
        return super().charge_metadata(job) | {
            "num_images": inp.num_images,
            "cost_per_image": settings.image_credit_cost,
        }

    def build_request(self, inp: ImageGenerationInput) -> GenerationRequest:
        params: dict[str, Any] = {"num_images": inp.num_images, "output_format": "png"}
        if inp.aspect_ratio != "auto":
            params["aspect_ratio"] = inp.aspect_ratio
        if inp.source_image_urls:
            params["image_urls"] = inp.source_image_urls
        return GenerationRequest(kind=MediaKind.IMAGE, prompt=inp.prompt.strip(), params=params)

    def summarize(self, inp: ImageGenerationInput, media: list[dict[str, Any]]) -> dict[str, Any]:
        return {"asset_id": inp.asset_id, "mode": "image_to_image" if inp.source_image_urls else "text_to_image"}


class VideoGenerationHandler(MediaGenerationHandler):
    job_type = JobType.VIDEO_GENERATION
    input_model = VideoGenerationInput
    media_kind = MediaKind.VIDEO
    extension = "mp4"

    def cost(self, job: Job) -> int:
        seconds = billed_video_seconds(self.parse_input(job).duration_ms)
        return seconds * settings.video_credit_cost_per_second

    def charge_metadata(self, job: Job) -> dict[str, Any]:
        inp = self.parse_input(job)
        return super().charge_metadata(job) | {
            "seconds": billed_video_seconds(inp.duration_ms),
            "cost_per_second": settings.video_credit_cost_per_second,
        }

    def build_request(self, inp: VideoGenerationInput) -> GenerationRequest:
        params: dict[str, Any] = {"duration": billed_video_seconds(inp.duration_ms)}
        if inp.image_url:
            params["image_url"] = inp.image_url
        return GenerationRequest(kind=MediaKind.VIDEO, prompt=inp.prompt.strip(), params=params)

    def summarize(self, inp: VideoGenerationInput, media: list[dict[str, Any]]) -> dict[str, Any]:
        return {"shot_id": inp.shot_id, "duration_sec": billed_video_seconds(inp.duration_ms)}


class AudioGenerationHandler(MediaGenerationHandler):
    job_type = JobType.AUDIO_GENERATION
    input_model = AudioGenerationInput
    media_kind = MediaKind.AUDIO
    extension = "mp3"

    def cost(self, job: Job) -> int:
        if self.parse_input(job).audio_type == "music":
            return settings.music_credit_cost
        return settings.sound_effect_credit_cost

    def build_request(self, inp: AudioGenerationInput) -> GenerationRequest:
        params: dict[str, Any] = {"audio_type": inp.audio_type}
        if inp.duration_ms:
            params["duration_ms"] = inp.duration_ms
        return GenerationRequest(kind=MediaKind.AUDIO, prompt=inp.prompt.strip(), params=params)

    def summarize(self, inp: AudioGenerationInput, media: list[dict[str, Any]]) -> dict[str, Any]:
        return {"audio_type": inp.audio_type}
