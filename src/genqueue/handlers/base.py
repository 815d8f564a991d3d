"""Handler contract used by the worker executor.

A handler declares what a job of its type costs and performs the work. When
the executor has already spent credits for the job it passes the resulting
``Charge``; the handler decides whether a failure must be compensated and
calls ``compensate`` before re-raising.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, ClassVar

import pydantic

from genqueue import jobs, ledger
from genqueue.db import offload
from genqueue.errors import JobCancelled, ProviderError, UploadError, ValidationError
from genqueue.models import Charge, Job, JobStatus, JobType

logger = logging.getLogger(__name__)


class ProgressReporter:
    """Reports progress for one job and aborts the handler once the job is cancelled."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id

    async def check_cancelled(self) -> None:
        job = await offload(jobs.get_job, self.job_id)
        if job.status == JobStatus.CANCELLED:
            raise JobCancelled(self.job_id)

    async def __call__(self, progress: int, step: int | None = None, message: str | None = None) -> None:
        await self.check_cancelled()
        await offload(jobs.report_progress, self.job_id, progress, step, message)


class JobHandler(ABC):
    job_type: ClassVar[JobType]
    input_model: ClassVar[type[pydantic.BaseModel]]

    def parse_input(self, job: Job) -> Any:
        try:
            return self.input_model.model_validate(job.input_data)
        except pydantic.ValidationError as exc:
            errors = "; ".join(f"{'.'.join(str(p) for p in e['loc']) or 'input'}: {e['msg']}" for e in exc.errors())
            raise ValidationError(f"invalid input for {self.job_type.value}: {errors}") from exc

    def cost(self, job: Job) -> int:
        return 0

    def charge_description(self, job: Job) -> str:
        return f"{self.job_type.value} job"

    def charge_metadata(self, job: Job) -> dict[str, Any]:
        return {"job_id": job.job_id, "job_type": job.type.value, "scope_id": job.scope_id}

    async def compensate(self, charge: Charge | None, exc: BaseException) -> None:
        if charge is None:
            return
        if isinstance(exc, JobCancelled):
            reason = "cancelled"
        elif isinstance(exc, UploadError):
            reason = "upload_failed"
        elif isinstance(exc, ProviderError):
            reason = "generation_failed"
        else:
            reason = "processing_failed"
        await offload(ledger.refund_charge, charge, reason)
        logger.info(f"Refunded charge {charge.transaction_id} of job {charge.job_id} ({reason})")

    @abstractmethod
    async def run(self, job: Job, report: ProgressReporter, charge: Charge | None) -> dict[str, Any]:
        ...
