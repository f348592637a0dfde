"""
HTTP callback delivery for the conversation bot.

POSTs each action as JSON to a configured endpoint (the messaging
gateway that talks to WhatsApp / Telegram).
"""

import logging
from typing import Optional

import httpx

from conversation.models import Action
from .base import ActionDelivery, DeliveryResult

logger = logging.getLogger(__name__)


class CallbackDelivery(ActionDelivery):
    """Delivers actions through an HTTP callback."""

    def __init__(
        self,
        callback_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.callback_url = callback_url
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def deliver(self, action: Action) -> DeliveryResult:
        try:
            resp = await self._client.post(
                self.callback_url, json=action.to_dict(), headers=self._headers()
            )
            resp.raise_for_status()
            message_id = None
            if resp.headers.get("content-type", "").startswith("application/json"):
                message_id = resp.json().get("message_id")
            return DeliveryResult(success=True, message_id=message_id)
        except httpx.HTTPError as e:
            logger.error(
                f"Callback delivery failed: {e}",
                extra={"conversation_id": action.conversation_id},
            )
            return DeliveryResult(success=False, error=str(e))

    async def health_check(self) -> bool:
        try:
            resp = await self._client.head(self.callback_url, timeout=5)
            return resp.status_code < 500
        except httpx.HTTPError:
            return False

    async def close(self) -> None:
        await self._client.aclose()
