"""Worker Executor.

Claims pending jobs and runs them through their handler inside the
spend-then-refund saga. Any number of workers may race for the same job;
``jobs.claim_job`` lets exactly one of them through.
"""

import asyncio
import logging
import signal
import time
from datetime import datetime

from genqueue import jobs, ledger
from genqueue.config import settings
from genqueue.db import init_db, offload
from genqueue.errors import InsufficientBalance, InvalidTransition, JobCancelled, NotFound, ValidationError
from genqueue.handlers.base import ProgressReporter
from genqueue.handlers.registry import HandlerRegistry, build_registry
from genqueue.models import Charge, Job, JobStatus

logger = logging.getLogger(__name__)


def _fail(job_id: str, message: str) -> Job:
    try:
        return jobs.fail_job(job_id, message)
    except InvalidTransition as exc:
        logger.info(f"Job {job_id} not marked failed: {exc}")
        return jobs.get_job(job_id)


def _settle_cancelled(job_id: str) -> Job:
    refunds = ledger.refund_outstanding(job_id, "cancelled")
    if refunds:
        logger.info(f"Refunded {len(refunds)} charge(s) of cancelled job {job_id}")
    return jobs.get_job(job_id)


async def process_job(job_id: str, registry: HandlerRegistry) -> Job | None:
    """Run one job to a terminal state. Returns None if another worker owns it."""
    try:
        job = await offload(jobs.claim_job, job_id)
    except (InvalidTransition, NotFound) as exc:
        logger.debug(f"Skipping job {job_id}: {exc}")
        return None

    handler = registry.get(job.type)
    if handler is None:
        logger.error(f"No handler for job type: {job.type.value}")
        return await offload(_fail, job_id, "unknown job type")

    charge: Charge | None = None
    try:
        cost = handler.cost(job)
        if cost > 0:
            tx = await offload(
                ledger.spend,
                job.owner_id,
                cost,
                handler.charge_description(job),
                handler.charge_metadata(job),
            )
            charge = Charge(transaction_id=tx.transaction_id, account_id=job.owner_id, amount=cost, job_id=job_id)
    except (InsufficientBalance, ValidationError) as exc:
        logger.warning(f"Job {job_id} rejected before execution: {exc}")
        return await offload(_fail, job_id, str(exc))

    started = time.time()
    try:
        result = await handler.run(job, ProgressReporter(job_id), charge)
    except JobCancelled:
        logger.info(f"Job {job_id} aborted after cancellation")
        return await offload(_settle_cancelled, job_id)
    except Exception as exc:
        logger.warning(f"Job {job_id} ({job.type.value}) failed after {time.time() - started:.2f}s: {exc}")
        return await offload(_fail, job_id, str(exc) or type(exc).__name__)

    try:
        done = await offload(jobs.complete_job, job_id, result)
    except InvalidTransition:
        logger.info(f"Job {job_id} was cancelled before completion, result discarded")
        return await offload(_settle_cancelled, job_id)

    logger.info(f"Job {job_id} ({job.type.value}) completed in {time.time() - started:.2f}s")
    return done


def reap_stale_jobs(at: datetime | None = None) -> list[Job]:
    """Fail processing jobs that outlived their type's timeout, refunding first."""
    reaped = []
    for job in jobs.list_stale(at):
        ledger.refund_outstanding(job.job_id, "timeout")
        if job.started_at is None:
            message = "job state invalid: processing without start time"
        else:
            message = f"job timed out after {jobs.timeout_minutes(job.type)} minutes"
        try:
            reaped.append(jobs.fail_job(job.job_id, message))
        except InvalidTransition:
            continue
        logger.warning(f"Reaped stale job {job.job_id} ({job.type.value})")
    return reaped


class Worker:
    """Polls for pending jobs and runs at most ``pool_size`` of them at once.

    Usage:
        worker = Worker(build_registry())
        await worker.run()
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        pool_size: int | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self.registry = registry
        self.pool_size = pool_size or settings.worker_pool_size
        self.poll_interval = poll_interval if poll_interval is not None else settings.worker_poll_interval_sec
        self._semaphore = asyncio.Semaphore(self.pool_size)
        self._active: dict[str, asyncio.Task] = {}
        self._stopping = asyncio.Event()
        self._last_reap = 0.0

        self.processed_count = 0
        self.failed_count = 0

    @property
    def active_count(self) -> int:
        return len(self._active)

    async def _run_one(self, job_id: str) -> None:
        async with self._semaphore:
            try:
                job = await process_job(job_id, self.registry)
            except Exception:
                logger.exception(f"Unexpected error while processing job {job_id}")
                self.failed_count += 1
                return
        if job is None:
            return
        if job.status == JobStatus.COMPLETED:
            self.processed_count += 1
        elif job.status == JobStatus.FAILED:
            self.failed_count += 1

    async def run_once(self) -> int:
        """Start as many pending jobs as there are free slots. Returns how many started."""
        slots = self.pool_size - len(self._active)
        if slots <= 0:
            return 0

        started = 0
        for job in await offload(jobs.list_pending, slots + len(self._active)):
            if job.job_id in self._active:
                continue
            if started >= slots:
                break
            task = asyncio.create_task(self._run_one(job.job_id))
            self._active[job.job_id] = task
            task.add_done_callback(lambda _t, job_id=job.job_id: self._active.pop(job_id, None))
            started += 1

        if started:
            logger.info(f"Started {started} job(s), active {len(self._active)}/{self.pool_size}")
        return started

    async def drain(self) -> None:
        if self._active:
            await asyncio.gather(*self._active.values(), return_exceptions=True)

    async def _maybe_reap(self) -> None:
        if time.monotonic() - self._last_reap < settings.worker_reap_interval_sec:
            return
        self._last_reap = time.monotonic()
        reaped = await offload(reap_stale_jobs)
        if reaped:
            logger.warning(f"Reaped {len(reaped)} stale job(s)")

    async def run(self) -> None:
        logger.info(f"Starting worker (pool size {self.pool_size})")
        try:
            while not self._stopping.is_set():
                try:
                    await self._maybe_reap()
                    started = await self.run_once()
                except Exception as exc:
                    logger.exception(f"Worker loop error: {exc}")
                    await asyncio.sleep(settings.worker_error_retry_sec)
                    continue

                wait = self.poll_interval if started else max(self.poll_interval, settings.worker_idle_poll_interval_sec)
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=wait)
                except asyncio.TimeoutError:
                    pass
        finally:
            if self._active:
                logger.info(f"Waiting for {len(self._active)} active job(s) to finish...")
                try:
                    await asyncio.wait_for(self.drain(), timeout=settings.worker_shutdown_timeout_sec)
                except asyncio.TimeoutError:
                    logger.warning("Shutdown timeout - some jobs may still be processing")
            logger.info(f"Worker stopped. Processed: {self.processed_count}, Failed: {self.failed_count}")

    def stop(self) -> None:
        logger.info("Stopping worker...")
        self._stopping.set()


async def _serve() -> None:
    worker = Worker(build_registry())
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.stop)
        except NotImplementedError:
            pass
    await worker.run()


def main() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()
    asyncio.run(_serve())


if __name__ == "__main__":
    main()
