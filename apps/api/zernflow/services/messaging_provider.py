"""Messaging provider abstraction.

The social inbox (Late) is an external collaborator: flows, sequences,
broadcasts and comment polling talk to it only through ``MessagingProvider``.
Every transport or HTTP failure surfaces as ``ProviderError`` so callers can
record a failed delivery instead of crashing a tick.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from zernflow.core.config import settings
from zernflow.services.http_service import request_with_retries

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Raised when the messaging provider rejects or fails a request."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class OutboundMessage:
    """Platform-adapted message ready to send."""

    text: str
    attachments: list[dict] = field(default_factory=list)
    quick_replies: list[dict] | None = None
    buttons: list[dict] | None = None
    template: dict | None = None
    reply_markup: dict | None = None

    def extras(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.attachments:
            data["attachments"] = self.attachments
        if self.quick_replies:
            data["quickReplies"] = self.quick_replies
        if self.buttons:
            data["buttons"] = self.buttons
        if self.template:
            data["template"] = self.template
        if self.reply_markup:
            data["replyMarkup"] = self.reply_markup
        return data


class MessagingProvider(ABC):
    """Abstract base class for messaging providers."""

    @abstractmethod
    async def send_message(
        self, account_id: str, conversation_id: str, message: OutboundMessage
    ) -> str | None:
        """Send a DM into an existing conversation. Returns the provider message id."""

    @abstractmethod
    async def list_posts(self, account_id: str) -> list[dict]:
        """Posts with recent comment activity for an account."""

    @abstractmethod
    async def list_comments(self, account_id: str, post_id: str) -> list[dict]:
        """Top-level comments (with nested ``replies``) for one post."""

    @abstractmethod
    async def reply_to_comment(
        self, account_id: str, post_id: str, comment_id: str, text: str
    ) -> None:
        """Post a public reply under a comment."""

    @abstractmethod
    async def send_private_reply(
        self, account_id: str, post_id: str, comment_id: str, text: str
    ) -> None:
        """Open a DM with a commenter from the comment context."""

    @abstractmethod
    async def list_accounts(self) -> list[dict]:
        """Connected social accounts."""

    @abstractmethod
    async def get_connect_url(
        self, platform: str, profile_id: str, redirect_url: str
    ) -> str:
        """OAuth URL for connecting a new account."""


class LateProvider(MessagingProvider):
    """Late inbox REST API."""

    def __init__(self, api_key: str, base_url: str | None = None):
        self.api_key = api_key
        self.base_url = (base_url or settings.LATE_API_BASE_URL).rstrip("/")
        self.timeout = httpx.Timeout(settings.LATE_API_TIMEOUT_SECONDS, connect=5.0)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        json: dict | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:

                async def _send() -> httpx.Response:
                    return await client.request(
                        method, url, params=params, json=json, headers=self._headers()
                    )

                response = await request_with_retries(_send, retry_delivered=method == "GET")
        except httpx.HTTPError as exc:
            raise ProviderError(f"Late API request failed: {type(exc).__name__}") from exc

        if response.status_code >= 400:
            raise ProviderError(
                f"Late API {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError("Late API returned invalid JSON") from exc

    async def send_message(
        self, account_id: str, conversation_id: str, message: OutboundMessage
    ) -> str | None:
        body = {"accountId": account_id, "message": message.text, **message.extras()}
        data = await self._request(
            "POST", f"/inbox/conversations/{conversation_id}/messages", json=body
        )
        payload = data.get("data", data) if isinstance(data, dict) else {}
        return payload.get("messageId") or payload.get("id")

    async def list_posts(self, account_id: str) -> list[dict]:
        data = await self._request("GET", "/inbox/comments", params={"accountId": account_id})
        return list(data.get("data") or []) if isinstance(data, dict) else []

    async def list_comments(self, account_id: str, post_id: str) -> list[dict]:
        data = await self._request(
            "GET", f"/inbox/comments/{post_id}", params={"accountId": account_id}
        )
        return list(data.get("comments") or []) if isinstance(data, dict) else []

    async def reply_to_comment(
        self, account_id: str, post_id: str, comment_id: str, text: str
    ) -> None:
        await self._request(
            "POST",
            f"/inbox/comments/{post_id}",
            json={"accountId": account_id, "message": text, "commentId": comment_id},
        )

    async def send_private_reply(
        self, account_id: str, post_id: str, comment_id: str, text: str
    ) -> None:
        await self._request(
            "POST",
            f"/inbox/comments/{post_id}/{comment_id}/private-reply",
            json={"accountId": account_id, "message": text},
        )

    async def list_accounts(self) -> list[dict]:
        data = await self._request("GET", "/accounts")
        if isinstance(data, dict):
            return list(data.get("accounts") or data.get("data") or [])
        return list(data or [])

    async def get_connect_url(
        self, platform: str, profile_id: str, redirect_url: str
    ) -> str:
        data = await self._request(
            "GET",
            f"/connect/{platform}",
            params={"profileId": profile_id, "redirect_url": redirect_url},
        )
        url = data.get("authUrl") if isinstance(data, dict) else None
        if not url:
            raise ProviderError("Late API returned no connect URL")
        return url


def get_provider(workspace) -> MessagingProvider | None:
    """
    Provider for a workspace, or None when it has no API key.

    Missing credentials are a permanent condition; callers short-circuit
    instead of retrying.
    """
    api_key = getattr(workspace, "late_api_key_encrypted", None) if workspace else None
    if not api_key:
        return None
    return LateProvider(api_key)
