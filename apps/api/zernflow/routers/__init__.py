"""API routers."""

from zernflow.routers.internal import router as internal_router
from zernflow.routers.webhooks import router as webhooks_router

__all__ = ["internal_router", "webhooks_router"]
