"""Webhooks router - inbound messaging provider deliveries."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from zernflow.core.deps import get_db
from zernflow.core.rate_limit import WEBHOOK_LIMIT, limiter
from zernflow.services.webhooks.registry import get_handler

router = APIRouter()


@router.post("/late")
@limiter.limit(WEBHOOK_LIMIT)
async def receive_late_webhook(
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Receive an inbound message from the messaging provider.

    Returns ``{ok, skipped?, reason?, ...}``; rejections are 4xx with ``{error}``.
    """
    handler = get_handler("late")
    return await handler.handle(request, db)
