"""Job service - durable scheduling, optimistic claiming and retry bookkeeping."""

from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from zernflow.core.config import settings
from zernflow.db.enums import JobStatus, JobType
from zernflow.db.models import ScheduledJob
from zernflow.utils import utcnow


def _job_type_value(job_type: JobType | str) -> str:
    return job_type.value if isinstance(job_type, JobType) else job_type


def build_job(
    job_type: JobType | str,
    payload: dict,
    run_at: datetime | None = None,
    workspace_id: UUID | None = None,
    idempotency_key: str | None = None,
) -> ScheduledJob:
    """Build an unsaved pending job row (for bulk inserts)."""
    return ScheduledJob(
        workspace_id=workspace_id,
        job_type=_job_type_value(job_type),
        payload=payload,
        run_at=run_at or utcnow(),
        status=JobStatus.PENDING.value,
        attempts=0,
        max_attempts=settings.JOB_MAX_ATTEMPTS,
        idempotency_key=idempotency_key,
    )


def schedule_job(
    db: Session,
    job_type: JobType | str,
    payload: dict,
    run_at: datetime | None = None,
    workspace_id: UUID | None = None,
    idempotency_key: str | None = None,
    commit: bool = True,
) -> ScheduledJob:
    """
    Enqueue a new job.

    If run_at is None, the job is due immediately.
    If idempotency_key is provided, duplicate jobs with same key will fail
    with IntegrityError (caller should catch and handle).
    """
    job = build_job(job_type, payload, run_at, workspace_id, idempotency_key)
    db.add(job)
    if commit:
        db.commit()
    else:
        db.flush()
    return job


def get_pending_jobs(db: Session, limit: int = 20) -> list[ScheduledJob]:
    """
    Get pending jobs that are due to run.

    Returns jobs where status='pending' and run_at <= now, ordered by run_at.
    """
    return (
        db.query(ScheduledJob)
        .filter(
            ScheduledJob.status == JobStatus.PENDING.value,
            ScheduledJob.run_at <= utcnow(),
        )
        .order_by(ScheduledJob.run_at)
        .limit(limit)
        .all()
    )


def claim_job(db: Session, job: ScheduledJob) -> bool:
    """
    Claim one job with a compare-and-swap on its status.

    ``UPDATE ... SET status='processing', attempts=attempts+1
    WHERE id=:id AND status='pending'``. Zero rows affected means another
    tick already claimed it; that is not an error.
    """
    now = utcnow()
    result = db.execute(
        update(ScheduledJob)
        .where(
            ScheduledJob.id == job.id,
            ScheduledJob.status == JobStatus.PENDING.value,
        )
        .values(
            status=JobStatus.PROCESSING.value,
            attempts=ScheduledJob.attempts + 1,
            started_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        return False
    db.refresh(job)
    return True


def claim_due_jobs(db: Session, limit: int = 20) -> list[ScheduledJob]:
    """Select due pending jobs in run_at order and keep the ones this tick won."""
    return [job for job in get_pending_jobs(db, limit=limit) if claim_job(db, job)]


def mark_job_completed(db: Session, job: ScheduledJob) -> ScheduledJob:
    """Mark a job as completed."""
    job.status = JobStatus.COMPLETED.value
    job.completed_at = utcnow()
    job.last_error = None
    db.commit()
    return job


def cancel_pending_job(db: Session, job_id: UUID) -> bool:
    """Cancel a job that has not been claimed yet; False when it already ran or was claimed."""
    result = db.execute(
        update(ScheduledJob)
        .where(
            ScheduledJob.id == job_id,
            ScheduledJob.status == JobStatus.PENDING.value,
        )
        .values(status=JobStatus.CANCELLED.value, completed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def retry_delay(attempts: int) -> timedelta:
    """Exponential backoff: 2^attempts * base seconds."""
    return timedelta(seconds=(2**attempts) * settings.JOB_BACKOFF_BASE_SECONDS)


def mark_job_failed(db: Session, job: ScheduledJob, error: str) -> ScheduledJob:
    """
    Record a failed attempt.

    If attempts < max_attempts, reset to pending with a backed-off run_at;
    otherwise the job is failed permanently. last_error is kept either way.
    """
    job.last_error = error[:2000]
    if job.attempts < job.max_attempts:
        job.status = JobStatus.PENDING.value
        job.run_at = utcnow() + retry_delay(job.attempts)
    else:
        job.status = JobStatus.FAILED.value
        job.completed_at = utcnow()
    db.commit()
    return job


def reclaim_stale_jobs(db: Session, stale_after: timedelta | None = None) -> int:
    """
    Recover jobs left in 'processing' by a crashed tick.

    Jobs claimed longer ago than ``stale_after`` go back to 'pending' (their
    attempt already counts) or to 'failed' once attempts are exhausted. Each
    transition is a conditional update so two sweeps never double-reclaim.
    """
    stale_after = stale_after or timedelta(minutes=settings.JOB_STALE_AFTER_MINUTES)
    cutoff = utcnow() - stale_after
    stale_filter = (
        ScheduledJob.status == JobStatus.PROCESSING.value,
        ScheduledJob.started_at < cutoff,
    )
    message = f"Reclaimed after exceeding {int(stale_after.total_seconds())}s in processing"

    exhausted = db.execute(
        update(ScheduledJob)
        .where(*stale_filter, ScheduledJob.attempts >= ScheduledJob.max_attempts)
        .values(status=JobStatus.FAILED.value, last_error=message, completed_at=utcnow())
        .execution_options(synchronize_session=False)
    ).rowcount
    retried = db.execute(
        update(ScheduledJob)
        .where(*stale_filter, ScheduledJob.attempts < ScheduledJob.max_attempts)
        .values(status=JobStatus.PENDING.value, last_error=message, run_at=utcnow())
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()
    return (exhausted or 0) + (retried or 0)


def get_job(db: Session, job_id: UUID) -> ScheduledJob | None:
    return db.query(ScheduledJob).filter(ScheduledJob.id == job_id).first()


def list_jobs(
    db: Session,
    workspace_id: UUID | None = None,
    status: JobStatus | None = None,
    job_type: JobType | None = None,
    limit: int = 50,
) -> list[ScheduledJob]:
    """List jobs with optional filters, newest first."""
    query = db.query(ScheduledJob)
    if workspace_id:
        query = query.filter(ScheduledJob.workspace_id == workspace_id)
    if status:
        query = query.filter(ScheduledJob.status == status.value)
    if job_type:
        query = query.filter(ScheduledJob.job_type == job_type.value)
    return query.order_by(ScheduledJob.created_at.desc()).limit(limit).all()
