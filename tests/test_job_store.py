import random
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from genqueue import jobs
from genqueue.config import settings
from genqueue.errors import InvalidTransition, NotFound, RateLimitExceeded, ValidationError
from genqueue.models import JobStatus, JobType


def _image_job(owner_id: str = "u1", **kwargs):
    return jobs.create_job(owner_id, JobType.IMAGE_GENERATION, {"prompt": "a red fox"}, **kwargs)


def test_create_job_starts_pending() -> None:
    job = _image_job(total_steps=3, scope_id="p1")
    assert job.status == JobStatus.PENDING
    assert job.progress == 0
    assert job.current_step == 0
    assert job.total_steps == 3
    assert job.scope_id == "p1"
    assert job.input_data == {"prompt": "a red fox"}
    assert job.started_at is None and job.completed_at is None
    assert jobs.get_job(job.job_id) == job


def test_create_rejects_unknown_type_and_bad_input() -> None:
    with pytest.raises(ValidationError):
        jobs.create_job("u1", "teleport", {})
    with pytest.raises(ValidationError):
        jobs.create_job("u1", JobType.EXPORT, ["not", "an", "object"])
    with pytest.raises(ValidationError):
        jobs.create_job("u1", JobType.EXPORT, {}, total_steps=0)


def test_get_missing_job() -> None:
    with pytest.raises(NotFound):
        jobs.get_job("nope")


def test_claim_moves_to_processing_once() -> None:
    job = _image_job()
    claimed = jobs.claim_job(job.job_id)
    assert claimed.status == JobStatus.PROCESSING
    assert claimed.started_at is not None

    with pytest.raises(InvalidTransition):
        jobs.claim_job(job.job_id)


def test_concurrent_claims_have_single_winner() -> None:
    job = _image_job()

    def attempt(_):
        try:
            jobs.claim_job(job.job_id)
            return "won"
        except InvalidTransition:
            return "lost"

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(attempt, range(8)))

    assert outcomes.count("won") == 1
    assert outcomes.count("lost") == 7


def test_progress_rejects_regression() -> None:
    job = _image_job()
    jobs.claim_job(job.job_id)
    jobs.report_progress(job.job_id, 10, current_step=1, message="starting")
    jobs.report_progress(job.job_id, 40, message="halfway")

    with pytest.raises(ValidationError):
        jobs.report_progress(job.job_id, 30)

    stored = jobs.get_job(job.job_id)
    assert stored.progress == 40
    assert stored.current_step == 1
    assert stored.progress_message == "halfway"


def test_progress_out_of_range() -> None:
    job = _image_job()
    jobs.claim_job(job.job_id)
    with pytest.raises(ValidationError):
        jobs.report_progress(job.job_id, 101)


def test_progress_on_pending_job_is_invalid() -> None:
    job = _image_job()
    with pytest.raises(InvalidTransition):
        jobs.report_progress(job.job_id, 5)


def test_interleaved_progress_ends_at_maximum() -> None:
    job = _image_job()
    jobs.claim_job(job.job_id)
    values = list(range(0, 101, 5))
    random.Random(7).shuffle(values)

    def report(value):
        try:
            jobs.report_progress(job.job_id, value)
        except ValidationError:
            pass
        return jobs.get_job(job.job_id).progress

    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(report, values))

    assert jobs.get_job(job.job_id).progress == 100


def test_completed_job_is_immutable() -> None:
    job = _image_job()
    jobs.claim_job(job.job_id)
    done = jobs.complete_job(job.job_id, {"url": "https://cdn.test/a.png"})
    assert done.status == JobStatus.COMPLETED
    assert done.progress == 100
    assert done.started_at <= done.completed_at

    with pytest.raises(InvalidTransition):
        jobs.complete_job(job.job_id, {"url": "other"})
    with pytest.raises(InvalidTransition):
        jobs.fail_job(job.job_id, "late failure")
    assert jobs.report_progress(job.job_id, 50).progress == 100

    stored = jobs.get_job(job.job_id)
    assert stored.result_data == {"url": "https://cdn.test/a.png"}
    assert stored.error_message is None


def test_failed_job_keeps_first_error() -> None:
    job = _image_job()
    jobs.claim_job(job.job_id)
    failed = jobs.fail_job(job.job_id, "provider exploded")
    assert failed.status == JobStatus.FAILED
    assert failed.completed_at is not None

    with pytest.raises(InvalidTransition):
        jobs.fail_job(job.job_id, "second error")
    with pytest.raises(InvalidTransition):
        jobs.complete_job(job.job_id, {})

    stored = jobs.get_job(job.job_id)
    assert stored.error_message == "provider exploded"
    assert stored.result_data is None


def test_complete_requires_processing() -> None:
    job = _image_job()
    with pytest.raises(InvalidTransition):
        jobs.complete_job(job.job_id, {})


def test_cancel_pending_and_processing() -> None:
    pending = _image_job()
    assert jobs.cancel_job(pending.job_id) is True
    assert jobs.get_job(pending.job_id).status == JobStatus.CANCELLED
    with pytest.raises(InvalidTransition):
        jobs.claim_job(pending.job_id)

    running = _image_job()
    jobs.claim_job(running.job_id)
    assert jobs.cancel_job(running.job_id) is True
    with pytest.raises(InvalidTransition):
        jobs.complete_job(running.job_id, {})


def test_cancel_terminal_is_noop() -> None:
    job = _image_job()
    jobs.claim_job(job.job_id)
    jobs.complete_job(job.job_id, {})
    assert jobs.cancel_job(job.job_id) is False
    assert jobs.get_job(job.job_id).status == JobStatus.COMPLETED


def test_cancel_checks_owner() -> None:
    job = _image_job("alice")
    with pytest.raises(NotFound):
        jobs.cancel_job(job.job_id, owner_id="mallory")
    assert jobs.get_job(job.job_id).status == JobStatus.PENDING


def test_list_for_owner_newest_first_with_filter() -> None:
    first = _image_job()
    second = _image_job()
    third = _image_job()
    _image_job("someone-else")
    jobs.claim_job(second.job_id)

    listed = jobs.list_for_owner("u1")
    assert [j.job_id for j in listed] == [third.job_id, second.job_id, first.job_id]

    pending = jobs.list_for_owner("u1", ["pending"])
    assert [j.job_id for j in pending] == [third.job_id, first.job_id]

    assert len(jobs.list_for_owner("u1", limit=1)) == 1

    with pytest.raises(ValidationError):
        jobs.list_for_owner("u1", ["sleeping"])


def test_list_pending_oldest_first() -> None:
    first = _image_job()
    second = _image_job("u2")
    assert [j.job_id for j in jobs.list_pending(10)] == [first.job_id, second.job_id]


def test_rate_limit_on_active_jobs(monkeypatch) -> None:
    monkeypatch.setattr(settings, "max_active_jobs_per_owner", 2)
    _image_job()
    _image_job()
    with pytest.raises(RateLimitExceeded):
        _image_job()
    jobs.create_job("u1", JobType.EXPORT, {"job_ids": ["x"]}, enforce_rate_limit=False)


def test_concurrent_creates_respect_rate_limit(monkeypatch) -> None:
    monkeypatch.setattr(settings, "max_active_jobs_per_owner", 1)
    both_counted = threading.Barrier(2, timeout=0.5)
    count_active = jobs._count_active

    def count_then_wait(conn, owner_id):
        active = count_active(conn, owner_id)
        try:
            both_counted.wait()
        except threading.BrokenBarrierError:
            pass
        return active

    monkeypatch.setattr(jobs, "_count_active", count_then_wait)

    def attempt(_):
        try:
            return _image_job().job_id
        except RateLimitExceeded:
            return None

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = list(pool.map(attempt, range(2)))

    assert len([o for o in outcomes if o]) == 1
    assert len(jobs.list_for_owner("u1", ["pending"])) == 1


def test_follow_chain_walks_child_pointers() -> None:
    root = _image_job()
    child = _image_job(parent_job_id=root.job_id)
    grandchild = _image_job(parent_job_id=child.job_id)

    jobs.claim_job(root.job_id)
    jobs.complete_job(root.job_id, {"child_job_id": child.job_id})
    jobs.claim_job(child.job_id)
    jobs.complete_job(child.job_id, {"child_job_id": grandchild.job_id})

    chain = jobs.follow_chain(root.job_id)
    assert [j.job_id for j in chain] == [root.job_id, child.job_id, grandchild.job_id]
    assert chain[-1].status == JobStatus.PENDING
    assert [j.job_id for j in jobs.list_children(root.job_id)] == [child.job_id]


def test_follow_chain_stops_at_missing_child() -> None:
    root = _image_job()
    jobs.claim_job(root.job_id)
    jobs.complete_job(root.job_id, {"child_job_id": "gone"})
    assert [j.job_id for j in jobs.follow_chain(root.job_id)] == [root.job_id]


def test_retry_creates_new_job() -> None:
    job = _image_job(scope_id="p1")
    jobs.claim_job(job.job_id)
    jobs.fail_job(job.job_id, "boom")

    again = jobs.retry_job(job.job_id)
    assert again.job_id != job.job_id
    assert again.status == JobStatus.PENDING
    assert again.input_data == job.input_data
    assert again.scope_id == "p1"
    assert jobs.get_job(job.job_id).status == JobStatus.FAILED


def test_retry_rejects_unfinished_or_completed() -> None:
    job = _image_job()
    with pytest.raises(ValidationError):
        jobs.retry_job(job.job_id)
    jobs.claim_job(job.job_id)
    jobs.complete_job(job.job_id, {})
    with pytest.raises(ValidationError):
        jobs.retry_job(job.job_id)


def test_list_stale_uses_type_timeout() -> None:
    image = _image_job()
    video = jobs.create_job("u1", JobType.VIDEO_GENERATION, {"prompt": "waves"})
    jobs.claim_job(image.job_id)
    jobs.claim_job(video.job_id)

    later = datetime.now(timezone.utc) + timedelta(minutes=settings.job_timeout_default_min + 1)
    assert [j.job_id for j in jobs.list_stale(later)] == [image.job_id]
    assert jobs.list_stale() == []


def test_job_stats() -> None:
    job = _image_job()
    _image_job()
    jobs.claim_job(job.job_id)
    jobs.complete_job(job.job_id, {})

    stats = jobs.job_stats()
    assert stats["job_count"] == 2
    assert stats["by_status"]["completed"] == 1
    assert stats["by_status"]["pending"] == 1
    assert stats["active_count"] == 1
    assert stats["success_rate"] == 1.0
