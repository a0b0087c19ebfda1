"""Outbound Telegram Bot API messages."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from app.types.errors import DeliveryError

_LOGGER = logging.getLogger(__name__)


class TelegramTransport:
    def __init__(
        self,
        token: Optional[str],
        api_base: str = "https://api.telegram.org",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def send_message(self, chat_id: int, thread_id: Optional[int], text: str) -> int:
        """Post ``text`` to the chat (and forum thread); returns the Telegram message id."""
        if not self.token:
            _LOGGER.info("[Telegram] DEV mode: would send to %s/%s: %s", chat_id, thread_id, text)
            return 0

        body = {"chat_id": chat_id, "text": text}
        if thread_id is not None:
            body["message_thread_id"] = thread_id

        url = f"{self.api_base}/bot{self.token}/sendMessage"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(url, json=body)
        except httpx.HTTPError as exc:
            raise DeliveryError(f"Telegram request failed: {exc}") from exc

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code >= 400 or not data.get("ok"):
            description = data.get("description") or resp.text
            raise DeliveryError(f"Telegram rejected message: {description}", status=resp.status_code)
        return int(data["result"]["message_id"])


def build_transport(settings) -> TelegramTransport:
    return TelegramTransport(
        settings.TELEGRAM_BOT_TOKEN,
        api_base=settings.TELEGRAM_API_BASE,
        timeout=settings.TELEGRAM_TIMEOUT,
    )
