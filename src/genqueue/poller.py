"""Status Poller: client-side view of an owner's recent jobs.

Each poll merges the active jobs with the jobs that finished inside the
trailing window. The next poll interval is derived from that snapshot alone
through the ``Heat`` state machine:

    hot  -> some job is pending or processing
    warm -> nothing active, something finished within the window
    idle -> neither
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

import httpx

from genqueue import jobs
from genqueue.config import settings
from genqueue.db import offload
from genqueue.models import ACTIVE_STATUSES, TERMINAL_STATUSES, Job, JobStatus

logger = logging.getLogger(__name__)

Fetch = Callable[[list[JobStatus], int], Awaitable[list[Job]]]
Clock = Callable[[], datetime]

ACTIVE = [JobStatus.PENDING, JobStatus.PROCESSING]
FINISHED = [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED]


class Heat(str, Enum):
    IDLE = "idle"
    WARM = "warm"
    HOT = "hot"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def classify(items: list[Job], at: datetime, window: timedelta) -> Heat:
    if any(j.status in ACTIVE_STATUSES for j in items):
        return Heat.HOT
    cutoff = at - window
    if any(j.status in TERMINAL_STATUSES and j.updated_at > cutoff for j in items):
        return Heat.WARM
    return Heat.IDLE


def interval_for(heat: Heat) -> float:
    if heat == Heat.HOT:
        return settings.poll_hot_sec
    if heat == Heat.WARM:
        return settings.poll_warm_sec
    return settings.poll_idle_sec


@dataclass
class PollSnapshot:
    jobs: list[Job]
    taken_at: datetime
    heat: Heat
    interval: float
    error: str | None = None


@dataclass
class Subscription:
    active: bool = True
    task: asyncio.Task | None = None
    _stopped: asyncio.Event = field(default_factory=asyncio.Event)

    def unsubscribe(self) -> None:
        self.active = False
        self._stopped.set()

    async def wait(self) -> None:
        if self.task is not None:
            await self.task


class StatusPoller:
    def __init__(
        self,
        fetch: Fetch,
        recent_window: timedelta | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.fetch = fetch
        self.recent_window = recent_window or timedelta(seconds=settings.poll_recent_window_sec)
        self.clock = clock or _utcnow
        self.snapshot: PollSnapshot | None = None

    async def poll_once(self) -> PollSnapshot:
        at = self.clock()
        try:
            active = await self.fetch(ACTIVE, settings.poll_active_limit)
            finished = await self.fetch(FINISHED, settings.poll_recent_limit)
        except Exception as exc:
            logger.warning(f"Job poll failed: {exc}")
            previous = self.snapshot.jobs if self.snapshot else []
            heat = classify(previous, at, self.recent_window)
            self.snapshot = PollSnapshot(previous, at, heat, interval_for(heat), error=str(exc))
            return self.snapshot

        cutoff = at - self.recent_window
        merged: dict[str, Job] = {}
        for job in [*active, *(j for j in finished if j.updated_at > cutoff)]:
            merged[job.job_id] = job
        items = list(merged.values())

        heat = classify(items, at, self.recent_window)
        self.snapshot = PollSnapshot(items, at, heat, interval_for(heat))
        return self.snapshot

    async def refresh(self) -> PollSnapshot:
        return await self.poll_once()

    def subscribe(self, callback: Callable[[PollSnapshot], object]) -> Subscription:
        """Start polling in the running event loop until ``unsubscribe`` is called."""
        subscription = Subscription()
        subscription.task = asyncio.create_task(self._loop(subscription, callback))
        return subscription

    async def _loop(self, subscription: Subscription, callback: Callable[[PollSnapshot], object]) -> None:
        while subscription.active:
            snapshot = await self.poll_once()
            if not subscription.active:
                break
            outcome = callback(snapshot)
            if inspect.isawaitable(outcome):
                await outcome
            try:
                await asyncio.wait_for(subscription._stopped.wait(), timeout=snapshot.interval)
            except asyncio.TimeoutError:
                pass


def store_fetcher(owner_id: str, scope_id: str | None = None) -> Fetch:
    async def fetch(statuses: list[JobStatus], limit: int) -> list[Job]:
        return await offload(jobs.list_for_owner, owner_id, statuses, limit, scope_id)

    return fetch


class HttpJobFetcher:
    """Reads an owner's jobs from the HTTP API."""

    def __init__(
        self,
        owner_id: str,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_sec: float = 30,
    ) -> None:
        self.owner_id = owner_id
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.transport = transport
        self.timeout_sec = timeout_sec

    async def __call__(self, statuses: list[JobStatus], limit: int) -> list[Job]:
        params = [("owner_id", self.owner_id), ("limit", str(limit))]
        params.extend(("status", s.value) for s in statuses)
        async with httpx.AsyncClient(timeout=self.timeout_sec, transport=self.transport) as client:
            r = await client.get(f"{self.base_url}/v1/jobs", params=params)
            r.raise_for_status()
            data = r.json()["data"]
        return [Job.model_validate(j) for j in data["jobs"]]
