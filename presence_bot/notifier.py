"""Notification transports.

A transport delivers one rendered message to one subscriber. It raises
``DeliveryError`` on failure; ``is_recipient_unreachable`` tells the poller
whether that failure is permanent (the subscriber blocked the bot, deleted
their account, or the chat no longer exists).
"""

from typing import Protocol

import httpx

from presence_bot.logger import logger

TELEGRAM_API_URL = "https://api.telegram.org"

_UNREACHABLE_MARKERS = (
    "bot was blocked by the user",
    "user is deactivated",
    "chat not found",
    "bot was kicked",
    "bot can't initiate conversation",
)


class DeliveryError(Exception):
    def __init__(self, subscriber: int, status_code: int | None, description: str):
        super().__init__(f"delivery to {subscriber} failed ({status_code}): {description}")
        self.subscriber = subscriber
        self.status_code = status_code
        self.description = description


def is_recipient_unreachable(exc: BaseException) -> bool:
    if not isinstance(exc, DeliveryError):
        return False
    if exc.status_code == 403:
        return True
    description = exc.description.lower()
    return any(marker in description for marker in _UNREACHABLE_MARKERS)


class Transport(Protocol):
    async def send_message(self, subscriber: int, text: str, parse_mode: str = "HTML") -> None: ...


class TelegramTransport:
    """Sends messages through the Telegram Bot API ``sendMessage`` method."""

    def __init__(self, client: httpx.AsyncClient, token: str, base_url: str = TELEGRAM_API_URL):
        self._client = client
        self._url = f"{base_url}/bot{token}/sendMessage"

    async def send_message(self, subscriber: int, text: str, parse_mode: str = "HTML") -> None:
        try:
            resp = await self._client.post(
                self._url,
                json={
                    "chat_id": subscriber,
                    "text": text,
                    "parse_mode": parse_mode,
                    "disable_web_page_preview": False,
                },
                timeout=15,
            )
        except httpx.HTTPError as e:
            raise DeliveryError(subscriber, None, repr(e)) from e

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.is_success and body.get("ok", True):
            return
        raise DeliveryError(
            subscriber,
            body.get("error_code", resp.status_code),
            body.get("description", resp.text),
        )


class LogTransport:
    """Fallback used when no bot token is configured: messages go to the log."""

    async def send_message(self, subscriber: int, text: str, parse_mode: str = "HTML") -> None:
        logger.info(f"[notify] -> {subscriber} ({parse_mode}): {text}")
