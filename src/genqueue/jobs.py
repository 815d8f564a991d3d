"""Job Store: durable job records and their state machine.

Every write is a conditional ``UPDATE`` scoped to one job id, so the status
check and the mutation happen atomically. ``claim_job`` is the single
serialization point between competing workers.
"""

import logging
import sqlite3
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from genqueue.config import settings
from genqueue.db import connect, dumps, now
from genqueue.errors import InvalidTransition, NotFound, RateLimitExceeded, ValidationError
from genqueue.models import ACTIVE_STATUSES, Job, JobStatus, JobType

logger = logging.getLogger(__name__)


def parse_job_type(value: str | JobType) -> JobType:
    try:
        return JobType(value)
    except ValueError as exc:
        raise ValidationError(f"unknown job type: {value}") from exc


def parse_statuses(values: Iterable[str | JobStatus] | None) -> list[JobStatus]:
    if not values:
        return []
    try:
        return [JobStatus(v) for v in values]
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def _fetch(conn: sqlite3.Connection, job_id: str) -> Job:
    row = conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
    if not row:
        raise NotFound(f"job {job_id} not found")
    return Job.from_row(row)


def _count_active(conn: sqlite3.Connection, owner_id: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) c FROM jobs WHERE owner_id = ? AND status IN ('pending', 'processing')",
        (owner_id,),
    ).fetchone()
    return int(row["c"])


def create_job(
    owner_id: str,
    job_type: str | JobType,
    input_data: dict[str, Any],
    total_steps: int | None = None,
    parent_job_id: str | None = None,
    scope_id: str | None = None,
    enforce_rate_limit: bool = True,
) -> Job:
    if not owner_id:
        raise ValidationError("owner_id is required")
    kind = parse_job_type(job_type)
    if not isinstance(input_data, dict):
        raise ValidationError("input_data must be an object")
    if total_steps is not None and total_steps < 1:
        raise ValidationError("total_steps must be >= 1")

    job_id = str(uuid4())
    ts = now()
    with connect() as conn:
        if enforce_rate_limit:
            # hold the write lock from the count through the insert
            conn.execute("BEGIN IMMEDIATE")
            active = _count_active(conn, owner_id)
            if active >= settings.max_active_jobs_per_owner:
                raise RateLimitExceeded(
                    f"{active} jobs already pending or processing (limit {settings.max_active_jobs_per_owner})"
                )
        conn.execute(
            """
            INSERT INTO jobs (
              job_id, owner_id, scope_id, type, status, parent_job_id, progress,
              current_step, total_steps, input_data, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, 'pending', ?, 0, ?, ?, ?, ?, ?)
            """,
            (
                job_id,
                owner_id,
                scope_id,
                kind.value,
                parent_job_id,
                0 if total_steps else None,
                total_steps,
                dumps(input_data),
                ts,
                ts,
            ),
        )
        job = _fetch(conn, job_id)

    logger.info(f"Created job {job_id} ({kind.value}) for owner {owner_id}")
    return job


def get_job(job_id: str) -> Job:
    with connect() as conn:
        return _fetch(conn, job_id)


def claim_job(job_id: str) -> Job:
    """Move a pending job to processing. Exactly one concurrent caller wins."""
    ts = now()
    with connect() as conn:
        cur = conn.execute(
            """
            UPDATE jobs SET status = 'processing', started_at = ?, updated_at = ?
            WHERE job_id = ? AND status = 'pending'
            """,
            (ts, ts, job_id),
        )
        job = _fetch(conn, job_id)
    if cur.rowcount != 1:
        raise InvalidTransition(job_id, job.status.value, JobStatus.PROCESSING.value)
    return job


def report_progress(
    job_id: str,
    progress: int,
    current_step: int | None = None,
    message: str | None = None,
) -> Job:
    """Record progress for a processing job. Terminal jobs are left untouched."""
    if not 0 <= progress <= 100:
        raise ValidationError(f"progress must be within 0..100, got {progress}")

    fields = ["progress = ?", "updated_at = ?"]
    values: list[Any] = [progress, now()]
    if current_step is not None:
        fields.append("current_step = ?")
        values.append(current_step)
    if message is not None:
        fields.append("progress_message = ?")
        values.append(message)
    values.extend([job_id, progress])

    sql = f"UPDATE jobs SET {', '.join(fields)} WHERE job_id = ? AND status = 'processing' AND progress <= ?"
    with connect() as conn:
        cur = conn.execute(sql, tuple(values))
        job = _fetch(conn, job_id)

    if cur.rowcount == 1 or job.is_terminal:
        return job
    if job.status == JobStatus.PROCESSING:
        raise ValidationError(f"progress cannot decrease from {job.progress} to {progress}")
    raise InvalidTransition(job_id, job.status.value, "progress")


def complete_job(job_id: str, result_data: dict[str, Any]) -> Job:
    if not isinstance(result_data, dict):
        raise ValidationError("result_data must be an object")
    ts = now()
    with connect() as conn:
        cur = conn.execute(
            """
            UPDATE jobs
            SET status = 'completed', progress = 100, result_data = ?, completed_at = ?, updated_at = ?
            WHERE job_id = ? AND status = 'processing'
            """,
            (dumps(result_data), ts, ts, job_id),
        )
        job = _fetch(conn, job_id)
    if cur.rowcount != 1:
        raise InvalidTransition(job_id, job.status.value, JobStatus.COMPLETED.value)
    return job


def fail_job(job_id: str, error_message: str) -> Job:
    ts = now()
    with connect() as conn:
        cur = conn.execute(
            """
            UPDATE jobs SET status = 'failed', error_message = ?, completed_at = ?, updated_at = ?
            WHERE job_id = ? AND status = 'processing'
            """,
            (error_message or "job failed", ts, ts, job_id),
        )
        job = _fetch(conn, job_id)
    if cur.rowcount != 1:
        raise InvalidTransition(job_id, job.status.value, JobStatus.FAILED.value)
    return job


def cancel_job(job_id: str, owner_id: str | None = None) -> bool:
    """Cancel a pending or processing job. Returns False if it was already terminal."""
    ts = now()
    with connect() as conn:
        job = _fetch(conn, job_id)
        if owner_id is not None and job.owner_id != owner_id:
            raise NotFound(f"job {job_id} not found")
        cur = conn.execute(
            """
            UPDATE jobs SET status = 'cancelled', completed_at = ?, updated_at = ?
            WHERE job_id = ? AND status IN ('pending', 'processing')
            """,
            (ts, ts, job_id),
        )
    if cur.rowcount == 1:
        logger.info(f"Cancelled job {job_id}")
        return True
    return False


def retry_job(job_id: str, owner_id: str | None = None) -> Job:
    """Create a fresh pending job from a failed or cancelled one."""
    original = get_job(job_id)
    if owner_id is not None and original.owner_id != owner_id:
        raise NotFound(f"job {job_id} not found")
    if original.status not in {JobStatus.FAILED, JobStatus.CANCELLED}:
        raise ValidationError("only failed or cancelled jobs can be retried")
    return create_job(
        owner_id=original.owner_id,
        job_type=original.type,
        input_data=original.input_data,
        total_steps=original.total_steps,
        parent_job_id=original.parent_job_id,
        scope_id=original.scope_id,
    )


def list_for_owner(
    owner_id: str,
    statuses: Iterable[str | JobStatus] | None = None,
    limit: int = 50,
    scope_id: str | None = None,
) -> list[Job]:
    wanted = parse_statuses(statuses)
    limit = min(max(1, int(limit)), 100)

    sql = "SELECT * FROM jobs WHERE owner_id = ?"
    values: list[Any] = [owner_id]
    if wanted:
        sql += f" AND status IN ({', '.join('?' for _ in wanted)})"
        values.extend(s.value for s in wanted)
    if scope_id is not None:
        sql += " AND scope_id = ?"
        values.append(scope_id)
    sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
    values.append(limit)

    with connect() as conn:
        rows = conn.execute(sql, tuple(values)).fetchall()
    return [Job.from_row(r) for r in rows]


def list_pending(limit: int = 10) -> list[Job]:
    with connect() as conn:
        rows = conn.execute(
            "SELECT * FROM jobs WHERE status = 'pending' ORDER BY created_at ASC, rowid ASC LIMIT ?",
            (limit,),
        ).fetchall()
    return [Job.from_row(r) for r in rows]


def list_children(parent_job_id: str) -> list[Job]:
    with connect() as conn:
        rows = conn.execute(
            "SELECT * FROM jobs WHERE parent_job_id = ? ORDER BY created_at ASC, rowid ASC",
            (parent_job_id,),
        ).fetchall()
    return [Job.from_row(r) for r in rows]


def follow_chain(job_id: str) -> list[Job]:
    """Walk ``result_data.child_job_id`` pointers from ``job_id`` to the end of the pipeline.

    The last element tells the true state of a multi-step pipeline. A pointer
    to a missing job ends the walk.
    """
    chain = [get_job(job_id)]
    seen = {job_id}
    while True:
        child_id = chain[-1].child_job_id
        if not child_id or child_id in seen:
            break
        seen.add(child_id)
        try:
            chain.append(get_job(child_id))
        except NotFound:
            logger.warning(f"Job {chain[-1].job_id} points at missing child {child_id}")
            break
    return chain


def timeout_minutes(job_type: JobType) -> int:
    if job_type == JobType.VIDEO_GENERATION:
        return settings.job_timeout_video_min
    if job_type == JobType.EXPORT:
        return settings.job_timeout_export_min
    if job_type in {
        JobType.STORYBOARD_GENERATION,
        JobType.STORYBOARD_BASIC_EXTRACTION,
        JobType.STORYBOARD_MATCHING,
    }:
        return settings.job_timeout_storyboard_min
    return settings.job_timeout_default_min


def list_stale(at: datetime | None = None) -> list[Job]:
    at = at or datetime.now(timezone.utc)
    with connect() as conn:
        rows = conn.execute("SELECT * FROM jobs WHERE status = 'processing'").fetchall()

    stale = []
    for job in (Job.from_row(r) for r in rows):
        if job.started_at is None:
            stale.append(job)
        elif at - job.started_at > timedelta(minutes=timeout_minutes(job.type)):
            stale.append(job)
    return stale


def job_stats() -> dict:
    with connect() as conn:
        rows = conn.execute("SELECT status, COUNT(*) c FROM jobs GROUP BY status").fetchall()
        by_type = conn.execute("SELECT type, COUNT(*) c FROM jobs GROUP BY type").fetchall()

    counts = {s.value: 0 for s in JobStatus}
    counts.update({r["status"]: int(r["c"]) for r in rows})
    total = sum(counts.values())
    finished = counts[JobStatus.COMPLETED.value] + counts[JobStatus.FAILED.value]
    success_rate = (counts[JobStatus.COMPLETED.value] / finished) if finished else 0.0
    return {
        "job_count": total,
        "by_status": counts,
        "by_type": {r["type"]: int(r["c"]) for r in by_type},
        "active_count": sum(counts[s.value] for s in ACTIVE_STATUSES),
        "success_rate": round(success_rate, 4),
    }
