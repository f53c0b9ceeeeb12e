"""Periodic ticks shared by the cron endpoints and the long-running worker."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from zernflow.core.config import settings
from zernflow.core.structured_logging import build_log_context
from zernflow.jobs.registry import resolve_job_handler
from zernflow.services import (
    broadcast_service,
    comment_service,
    job_service,
    sequence_service,
)

logger = logging.getLogger(__name__)


async def process_job(db: Session, job) -> None:
    """Process a single claimed job based on its type."""
    logger.info("Processing job %s (type=%s, attempt=%s)", job.id, job.job_type, job.attempts)
    handler = resolve_job_handler(job.job_type)
    await handler(db, job)


async def process_due_jobs(db: Session, limit: int | None = None) -> dict[str, int]:
    """
    One jobs tick: sweep stale claims, claim due jobs, run each handler.

    A handler exception rolls back that job's work and records a failed
    attempt; the rest of the batch continues.
    """
    reclaimed = job_service.reclaim_stale_jobs(db)
    if reclaimed:
        logger.warning("Reclaimed %s stale jobs", reclaimed)

    jobs = job_service.claim_due_jobs(db, limit=limit or settings.JOBS_BATCH_SIZE)
    processed = 0
    failed = 0
    for job in jobs:
        try:
            await process_job(db, job)
            job_service.mark_job_completed(db, job)
            processed += 1
        except Exception as exc:
            db.rollback()
            failed += 1
            logger.exception(
                "Job %s failed",
                job.id,
                extra=build_log_context(
                    job_id=str(job.id),
                    job_type=job.job_type,
                    workspace_id=str(job.workspace_id) if job.workspace_id else None,
                ),
            )
            db.refresh(job)
            job_service.mark_job_failed(db, job, f"{type(exc).__name__}: {exc}")

    return {"processed": processed, "failed": failed, "total": len(jobs), "reclaimed": reclaimed}


async def process_sequences(db: Session) -> dict[str, int]:
    return await sequence_service.process_due_enrollments(db)


async def process_broadcasts(db: Session) -> dict[str, int]:
    return broadcast_service.promote_scheduled_broadcasts(db)


async def process_comments(db: Session) -> dict[str, int]:
    return await comment_service.poll_comments(db)


TICKS = {
    "jobs": process_due_jobs,
    "sequences": process_sequences,
    "broadcasts": process_broadcasts,
    "comments": process_comments,
}
