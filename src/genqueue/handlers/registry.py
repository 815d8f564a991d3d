from collections.abc import Iterable

from genqueue.handlers.base import JobHandler
from genqueue.handlers.export import ExportHandler
from genqueue.handlers.generation import AudioGenerationHandler, ImageGenerationHandler, VideoGenerationHandler
from genqueue.handlers.storyboard import BasicExtractionHandler, MatchingHandler, StoryboardGenerationHandler
from genqueue.models import JobType
from genqueue.providers import GenerationProvider, HttpGenerationProvider
from genqueue.uploads import HttpMediaUploader, MediaUploader

HandlerRegistry = dict[JobType, JobHandler]


def registry_from(handlers: Iterable[JobHandler], complete: bool = True) -> HandlerRegistry:
    registry: HandlerRegistry = {}
    for handler in handlers:
        if handler.job_type in registry:
            raise ValueError(f"duplicate handler for {handler.job_type.value}")
        registry[handler.job_type] = handler
    missing = [t.value for t in JobType if t not in registry]
    if complete and missing:
        raise ValueError(f"no handler registered for: {', '.join(missing)}")
    return registry


def build_registry(
    provider: GenerationProvider | None = None,
    uploader: MediaUploader | None = None,
) -> HandlerRegistry:
    """Handler table covering every JobType."""
    provider = provider or HttpGenerationProvider()
    uploader = uploader or HttpMediaUploader()
    return registry_from(
        [
            ImageGenerationHandler(provider, uploader),
            VideoGenerationHandler(provider, uploader),
            AudioGenerationHandler(provider, uploader),
            ExportHandler(uploader),
            StoryboardGenerationHandler(),
            BasicExtractionHandler(provider),
            MatchingHandler(),
        ]
    )
