"""Inbound webhook handlers by provider name."""

from __future__ import annotations

from zernflow.services.webhooks.base import WebhookHandler
from zernflow.services.webhooks.late import LateWebhookHandler

_HANDLERS: dict[str, WebhookHandler] = {
    handler.provider: handler for handler in (LateWebhookHandler(),)
}


def get_handler(provider: str) -> WebhookHandler:
    handler = _HANDLERS.get(provider)
    if not handler:
        raise KeyError(f"Unknown webhook provider: {provider}")
    return handler
