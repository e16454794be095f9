"""Instagram messaging adapter: implements MessagingPort.

Sends one DM per call through the Instagram Messaging API (Graph API
`me/messages` endpoint) using the Page Access Token.
"""

from __future__ import annotations

import logging

import httpx

from src.ports.messaging_port import MessagingError

logger = logging.getLogger(__name__)

_GRAPH_URL = "https://graph.facebook.com/{version}/me/messages"
_TIMEOUT_SECONDS = 10


class InstagramMessenger:
    """Instagram implementation of MessagingPort."""

    def __init__(
        self,
        page_access_token: str | None = None,
        api_version: str | None = None,
        timeout: float = _TIMEOUT_SECONDS,
    ) -> None:
        if page_access_token is None or api_version is None:
            from src.config import settings
            page_access_token = page_access_token or settings.PAGE_ACCESS_TOKEN
            api_version = api_version or settings.GRAPH_API_VERSION

        self._token = page_access_token
        self._url = _GRAPH_URL.format(version=api_version)
        self._timeout = timeout

    async def send_message(self, user_key: str, text: str) -> None:
        """Send a single text message to an Instagram-scoped user id."""
        body = {
            "recipient": {"id": user_key},
            "message": {"text": text},
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    self._url,
                    json=body,
                    headers={"Authorization": f"Bearer {self._token}"},
                )
        except httpx.HTTPError as exc:
            logger.error("Instagram send to %s failed: %s", user_key, exc)
            raise MessagingError(f"Instagram send failed: {exc}") from exc

        if resp.status_code >= 400:
            logger.error("Instagram send to %s failed: %d %s", user_key, resp.status_code, resp.text)
            raise MessagingError(f"Instagram send failed: {resp.status_code}")

        logger.debug("Instagram message sent to %s", user_key)
