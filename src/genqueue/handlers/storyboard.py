"""Two-step storyboard pipeline linked by child jobs.

``storyboard_generation`` only creates the first step. Each step stores the
id of the job it spawned under ``child_job_id`` in its result, so readers
follow the pointer chain to learn the state of the whole pipeline.
"""

import json
import logging
from typing import Any

from pydantic import BaseModel, Field

from genqueue import jobs
from genqueue.db import offload
from genqueue.errors import ProviderError
from genqueue.handlers.base import JobHandler, ProgressReporter
from genqueue.models import Charge, Job, JobType
from genqueue.providers import GenerationProvider, GenerationRequest, MediaKind

logger = logging.getLogger(__name__)

EXTRACTION_PROMPT = (
    "Split the following script into storyboard shots. "
    "Return a strict JSON array; each item must have "
    "description, visual_prompt and optional dialogue. No prose.\n\n"
    "SCRIPT:\n"
)


class StoryboardInput(BaseModel):
    episode_id: str = Field(min_length=1)
    script: str = Field(min_length=1, max_length=50000)
    characters: list[str] = Field(default_factory=list)
    scenes: list[str] = Field(default_factory=list)


class BasicExtractionInput(StoryboardInput):
    root_job_id: str | None = None


class Shot(BaseModel):
    description: str
    visual_prompt: str = ""
    dialogue: str | None = None


class MatchingInput(BaseModel):
    episode_id: str = Field(min_length=1)
    basic_extraction_job_id: str = Field(min_length=1)
    shots: list[Shot] = Field(min_length=1)
    characters: list[str] = Field(default_factory=list)
    scenes: list[str] = Field(default_factory=list)
    root_job_id: str | None = None


def parse_shots(content: str) -> list[dict[str, Any]]:
    content = content.strip()
    if content.startswith("```"):
        content = content.strip("`")
        if content.startswith("json"):
            content = content[4:].strip()

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ProviderError(f"invalid_shot_json: {content[:250]}") from exc
    if not isinstance(parsed, list) or not parsed:
        raise ProviderError("shot_response_not_list")
    try:
        return [Shot.model_validate(item).model_dump() for item in parsed]
    except ValueError as exc:
        raise ProviderError(f"invalid_shot_item: {exc}") from exc


def _create_child(job: Job, job_type: JobType, input_data: dict[str, Any]) -> Job:
    return jobs.create_job(
        owner_id=job.owner_id,
        job_type=job_type,
        input_data=input_data,
        parent_job_id=job.job_id,
        scope_id=job.scope_id,
        enforce_rate_limit=False,
    )


async def _spawn(job: Job, job_type: JobType, input_data: dict[str, Any]) -> Job:
    return await offload(_create_child, job, job_type, input_data)


class StoryboardGenerationHandler(JobHandler):
    job_type = JobType.STORYBOARD_GENERATION
    input_model = StoryboardInput

    async def run(self, job: Job, report: ProgressReporter, charge: Charge | None) -> dict[str, Any]:
        inp = self.parse_input(job)
        await report(10, 1, "Creating storyboard extraction job")
        child = await _spawn(
            job,
            JobType.STORYBOARD_BASIC_EXTRACTION,
            inp.model_dump() | {"root_job_id": job.job_id},
        )
        await report(50, 1, "Storyboard extraction queued")
        return {
            "child_job_id": child.job_id,
            "message": "Basic extraction queued; character and scene matching follows",
        }


class BasicExtractionHandler(JobHandler):
    job_type = JobType.STORYBOARD_BASIC_EXTRACTION
    input_model = BasicExtractionInput

    def __init__(self, provider: GenerationProvider) -> None:
        self.provider = provider

    async def run(self, job: Job, report: ProgressReporter, charge: Charge | None) -> dict[str, Any]:
        inp = self.parse_input(job)
        await report(10, 1, "Extracting shots")
        result = await self.provider.generate(
            GenerationRequest(kind=MediaKind.TEXT, prompt=EXTRACTION_PROMPT + inp.script)
        )
        shots = parse_shots(result.text or "")
        await report(80, 2, f"Extracted {len(shots)} shots")

        child = await _spawn(
            job,
            JobType.STORYBOARD_MATCHING,
            {
                "episode_id": inp.episode_id,
                "basic_extraction_job_id": job.job_id,
                "shots": shots,
                "characters": inp.characters,
                "scenes": inp.scenes,
                "root_job_id": inp.root_job_id,
            },
        )
        await report(90, 2, "Matching job queued")
        return {"shots": shots, "shot_count": len(shots), "child_job_id": child.job_id}


def _mentions(text: str, names: list[str]) -> list[str]:
    lowered = text.lower()
    return [n for n in names if n and n.lower() in lowered]


class MatchingHandler(JobHandler):
    """Attaches known characters and scenes to the shots of the previous step."""

    job_type = JobType.STORYBOARD_MATCHING
    input_model = MatchingInput

    async def run(self, job: Job, report: ProgressReporter, charge: Charge | None) -> dict[str, Any]:
        inp = self.parse_input(job)
        shots = inp.shots
        matched = []
        for i, shot in enumerate(shots):
            text = " ".join(filter(None, [shot.description, shot.visual_prompt, shot.dialogue]))
            scenes = _mentions(text, inp.scenes)
            matched.append(
                shot.model_dump()
                | {
                    "order": i + 1,
                    "characters": _mentions(text, inp.characters),
                    "scene": scenes[0] if scenes else None,
                }
            )
            await report(10 + (85 * (i + 1)) // len(shots), 1, f"Matched {i + 1}/{len(shots)} shots")

        logger.info(f"Matched {len(matched)} shots for episode {inp.episode_id}")
        return {
            "episode_id": inp.episode_id,
            "shots": matched,
            "shot_count": len(matched),
            "matched_count": sum(1 for s in matched if s["characters"] or s["scene"]),
        }
