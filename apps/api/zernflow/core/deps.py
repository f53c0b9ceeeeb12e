"""FastAPI dependencies for database access and cron authentication."""

from typing import Generator

from fastapi import Header, HTTPException, Query
from sqlalchemy.orm import Session

from zernflow.core.config import settings
from zernflow.core.security import verify_secret
from zernflow.db.session import SessionLocal


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def verify_cron_secret(
    key: str | None = Query(None),
    authorization: str | None = Header(None),
) -> None:
    """
    Authenticate a cron tick.

    Accepts the shared secret as ``?key=`` or as ``Authorization: Bearer <secret>``.

    Raises:
        HTTPException 501: CRON_SECRET not configured
        HTTPException 401: secret missing or wrong
    """
    expected = settings.CRON_SECRET
    if not expected:
        raise HTTPException(status_code=501, detail="CRON_SECRET not configured")

    provided = key
    if not provided and authorization and authorization.lower().startswith("bearer "):
        provided = authorization[7:].strip()

    if not verify_secret(provided, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")
