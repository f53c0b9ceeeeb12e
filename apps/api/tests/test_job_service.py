"""Tests for the durable job store and the jobs tick."""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from zernflow.db.enums import JobStatus, JobType
from zernflow.db.models import ScheduledJob
from zernflow.services import job_service
from zernflow.utils import utcnow


def _make_due(db, job: ScheduledJob) -> None:
    job.run_at = utcnow() - timedelta(seconds=1)
    db.commit()


# =============================================================================
# Scheduling and claiming
# =============================================================================

def test_schedule_job_defaults(db, workspace):
    job = job_service.schedule_job(db, JobType.RESUME_FLOW, {"sessionId": "x"}, workspace_id=workspace.id)

    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 0
    assert job.max_attempts == 3
    assert job.run_at <= utcnow()


def test_pending_jobs_are_due_and_ordered_by_run_at(db):
    now = utcnow()
    later = job_service.schedule_job(db, JobType.RESUME_FLOW, {}, run_at=now - timedelta(seconds=5))
    earlier = job_service.schedule_job(db, JobType.RESUME_FLOW, {}, run_at=now - timedelta(seconds=30))
    job_service.schedule_job(db, JobType.RESUME_FLOW, {}, run_at=now + timedelta(hours=1))

    pending = job_service.get_pending_jobs(db)

    assert [job.id for job in pending] == [earlier.id, later.id]


def test_claim_is_won_only_once(db):
    job = job_service.schedule_job(db, JobType.SEND_BROADCAST, {})

    assert job_service.claim_job(db, job) is True
    assert job_service.claim_job(db, job) is False

    db.refresh(job)
    assert job.status == JobStatus.PROCESSING.value
    assert job.attempts == 1
    assert job.started_at is not None


def test_idempotency_key_rejects_duplicates(db):
    job_service.schedule_job(db, JobType.SEND_BROADCAST, {}, idempotency_key="bc:1:r:1")

    with pytest.raises(IntegrityError):
        job_service.schedule_job(db, JobType.SEND_BROADCAST, {}, idempotency_key="bc:1:r:1")
    db.rollback()


def test_retry_delay_is_exponential():
    assert job_service.retry_delay(1) == timedelta(seconds=10)
    assert job_service.retry_delay(2) == timedelta(seconds=20)
    assert job_service.retry_delay(3) == timedelta(seconds=40)


def test_mark_job_failed_backs_off_until_exhausted(db):
    job = job_service.schedule_job(db, JobType.SEND_BROADCAST, {})
    job_service.claim_job(db, job)

    job_service.mark_job_failed(db, job, "first")
    assert job.status == JobStatus.PENDING.value
    assert job.run_at > utcnow()
    assert job.last_error == "first"

    job.attempts = 3
    job_service.mark_job_failed(db, job, "last")
    assert job.status == JobStatus.FAILED.value
    assert job.completed_at is not None
    assert job.last_error == "last"


# =============================================================================
# Stale sweep
# =============================================================================

def _stale_job(db, attempts: int) -> ScheduledJob:
    job = job_service.schedule_job(db, JobType.RESUME_FLOW, {})
    job.status = JobStatus.PROCESSING.value
    job.attempts = attempts
    job.started_at = utcnow() - timedelta(minutes=30)
    db.commit()
    return job


def test_reclaim_returns_stale_job_to_pending(db):
    job = _stale_job(db, attempts=1)
    fresh = job_service.schedule_job(db, JobType.RESUME_FLOW, {})
    job_service.claim_job(db, fresh)

    assert job_service.reclaim_stale_jobs(db) == 1

    db.refresh(job)
    db.refresh(fresh)
    assert job.status == JobStatus.PENDING.value
    assert "Reclaimed" in job.last_error
    assert fresh.status == JobStatus.PROCESSING.value


def test_reclaim_fails_stale_job_without_attempts_left(db):
    job = _stale_job(db, attempts=3)

    assert job_service.reclaim_stale_jobs(db) == 1

    db.refresh(job)
    assert job.status == JobStatus.FAILED.value


# =============================================================================
# Jobs tick
# =============================================================================

@pytest.mark.asyncio
async def test_handler_failing_three_times_ends_failed(db, monkeypatch):
    from zernflow.jobs import registry
    from zernflow.services import tick_service

    calls = []

    async def always_fails(db, job):
        calls.append(job.id)
        raise RuntimeError("provider exploded")

    monkeypatch.setitem(registry.JOB_HANDLERS, JobType.RESUME_FLOW.value, always_fails)
    job = job_service.schedule_job(db, JobType.RESUME_FLOW, {"sessionId": "x"})

    for attempt in range(1, 4):
        result = await tick_service.process_due_jobs(db)
        assert result["failed"] == 1
        db.refresh(job)
        assert job.attempts == attempt
        if attempt < 3:
            assert job.status == JobStatus.PENDING.value
            assert job.run_at > utcnow()
            _make_due(db, job)

    assert job.status == JobStatus.FAILED.value
    assert job.last_error == "RuntimeError: provider exploded"
    assert len(calls) == 3

    # Permanently failed jobs are never claimed again
    result = await tick_service.process_due_jobs(db)
    assert result["total"] == 0


@pytest.mark.asyncio
async def test_handler_failing_once_then_succeeding_completes(db, monkeypatch):
    from zernflow.jobs import registry
    from zernflow.services import tick_service

    outcomes = [RuntimeError("transient"), None]

    async def flaky(db, job):
        outcome = outcomes.pop(0)
        if outcome:
            raise outcome

    monkeypatch.setitem(registry.JOB_HANDLERS, JobType.SEND_BROADCAST.value, flaky)
    job = job_service.schedule_job(db, JobType.SEND_BROADCAST, {})

    first = await tick_service.process_due_jobs(db)
    db.refresh(job)
    assert first["failed"] == 1
    assert job.status == JobStatus.PENDING.value

    _make_due(db, job)
    second = await tick_service.process_due_jobs(db)
    db.refresh(job)

    assert second["processed"] == 1
    assert job.status == JobStatus.COMPLETED.value
    assert job.attempts == 2
    assert job.last_error is None


@pytest.mark.asyncio
async def test_unknown_job_type_is_recorded_as_failure(db):
    from zernflow.services import tick_service

    job = job_service.schedule_job(db, "legacy_job", {})

    await tick_service.process_due_jobs(db)

    db.refresh(job)
    assert job.attempts == 1
    assert job.last_error == "ValueError: Unknown job type: legacy_job"


@pytest.mark.asyncio
async def test_future_jobs_are_left_alone(db):
    from zernflow.services import tick_service

    job_service.schedule_job(db, JobType.RESUME_FLOW, {}, run_at=utcnow() + timedelta(minutes=5))

    result = await tick_service.process_due_jobs(db)

    assert result == {"processed": 0, "failed": 0, "total": 0, "reclaimed": 0}


# =============================================================================
# Registry
# =============================================================================

def test_every_job_type_has_a_handler():
    from zernflow.jobs.registry import JOB_HANDLERS

    assert set(JOB_HANDLERS) == {job_type.value for job_type in JobType}


def test_resolve_unknown_job_type_raises():
    from zernflow.jobs.registry import resolve_job_handler

    with pytest.raises(ValueError, match="Unknown job type"):
        resolve_job_handler("nope")


@pytest.mark.asyncio
async def test_resume_job_without_session_id_fails_fast(db):
    from zernflow.jobs.handlers.flows import process_resume_flow

    job = job_service.schedule_job(db, JobType.RESUME_FLOW, {})

    with pytest.raises(ValueError, match="sessionId"):
        await process_resume_flow(db, job)
