import json
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from genqueue import jobs
from genqueue.db import offload
from genqueue.errors import NotFound, ValidationError
from genqueue.handlers.base import JobHandler, ProgressReporter
from genqueue.models import Charge, Job, JobStatus, JobType
from genqueue.uploads import MediaUploader


class ExportInput(BaseModel):
    job_ids: list[str] = Field(min_length=1, max_length=100)
    title: str | None = Field(default=None, max_length=200)


class ExportHandler(JobHandler):
    """Bundles the results of completed jobs into one manifest document."""

    job_type = JobType.EXPORT
    input_model = ExportInput

    def __init__(self, uploader: MediaUploader) -> None:
        self.uploader = uploader

    async def run(self, job: Job, report: ProgressReporter, charge: Charge | None) -> dict[str, Any]:
        inp = self.parse_input(job)
        total = len(inp.job_ids)
        items = []
        for i, source_id in enumerate(inp.job_ids):
            try:
                source = await offload(jobs.get_job, source_id)
            except NotFound as exc:
                raise ValidationError(f"job {source_id} not found") from exc
            if source.owner_id != job.owner_id:
                raise ValidationError(f"job {source_id} not found")
            if source.status != JobStatus.COMPLETED:
                raise ValidationError(f"job {source_id} is {source.status.value}, not completed")
            items.append({"job_id": source.job_id, "type": source.type.value, "result": source.result_data})
            await report((80 * (i + 1)) // total, 1, f"Collected {i + 1}/{total}")

        manifest = {
            "title": inp.title or f"export-{job.job_id}",
            "owner_id": job.owner_id,
            "scope_id": job.scope_id,
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "items": items,
        }
        await report(90, 2, "Uploading manifest")
        url = await self.uploader.upload_bytes(
            json.dumps(manifest, ensure_ascii=False, indent=2).encode("utf-8"),
            f"{job.owner_id}/exports/{job.job_id}.json",
            "application/json",
        )
        return {"manifest_url": url, "item_count": len(items)}
