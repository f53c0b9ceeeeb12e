"""
Internal endpoints for scheduled/cron operations.

Protected by CRON_SECRET (``?key=`` or ``Authorization: Bearer``).
Call from an external scheduler; each tick claims a bounded batch.
"""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from zernflow.core.deps import get_db, verify_cron_secret
from zernflow.services import tick_service

router = APIRouter(
    prefix="/internal/scheduled",
    tags=["internal"],
    dependencies=[Depends(verify_cron_secret)],
)
logger = logging.getLogger(__name__)


class TickResponse(BaseModel):
    processed: int
    failed: int
    total: int


class JobsTickResponse(TickResponse):
    reclaimed: int


class CommentsTickResponse(BaseModel):
    channels: int
    processed: int
    matched: int
    errors: int


@router.get("/jobs", response_model=JobsTickResponse)
async def jobs_tick(db: Session = Depends(get_db)):
    """Sweep stale claims, then claim and run due jobs (resume_flow, send_broadcast)."""
    return await tick_service.process_due_jobs(db)


@router.get("/sequences", response_model=TickResponse)
async def sequences_tick(db: Session = Depends(get_db)):
    """Advance due sequence enrollments by one step each."""
    return await tick_service.process_sequences(db)


@router.get("/broadcasts", response_model=TickResponse)
async def broadcasts_tick(db: Session = Depends(get_db)):
    """Promote due scheduled broadcasts to sending."""
    return await tick_service.process_broadcasts(db)


@router.get("/comments", response_model=CommentsTickResponse)
async def comments_tick(db: Session = Depends(get_db)):
    """Poll post comments for comment_keyword triggers."""
    result = await tick_service.process_comments(db)
    logger.info("Comment tick: %s", result)
    return result
