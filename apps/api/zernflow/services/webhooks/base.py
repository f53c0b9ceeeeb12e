"""Inbound provider webhook handler interface."""

from __future__ import annotations

from typing import Protocol

from fastapi import Request
from sqlalchemy.orm import Session


class WebhookHandler(Protocol):
    """
    One inbound messaging provider.

    ``handle`` returns the JSON acknowledgement (``{ok, skipped?, reason?, ...}``);
    rejections are raised as HTTPException and rendered as ``{error}``.
    """

    provider: str

    async def handle(self, request: Request, db: Session) -> dict: ...
