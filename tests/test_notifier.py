"""Tests for the Telegram transport and the unreachable-recipient predicate."""

import json

import httpx
import pytest

from presence_bot.notifier import DeliveryError, TelegramTransport, is_recipient_unreachable


def test_blocked_is_unreachable():
    assert is_recipient_unreachable(DeliveryError(1, 403, "Forbidden: bot was blocked by the user"))
    assert is_recipient_unreachable(DeliveryError(1, 400, "Bad Request: chat not found"))


def test_transient_errors_are_not_unreachable():
    assert not is_recipient_unreachable(DeliveryError(1, 429, "Too Many Requests: retry after 5"))
    assert not is_recipient_unreachable(DeliveryError(1, None, "ConnectError()"))
    assert not is_recipient_unreachable(RuntimeError("boom"))


@pytest.mark.asyncio
async def test_send_message_posts_to_bot_api():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"ok": True, "result": {}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        transport = TelegramTransport(client, "TOKEN", base_url="https://tg.test")
        await transport.send_message(42, "<b>hi</b>")

    assert str(requests[0].url) == "https://tg.test/botTOKEN/sendMessage"
    body = json.loads(requests[0].content)
    assert body["chat_id"] == 42
    assert body["parse_mode"] == "HTML"


@pytest.mark.asyncio
async def test_send_message_raises_delivery_error():
    def handler(request):
        return httpx.Response(
            403,
            json={"ok": False, "error_code": 403, "description": "Forbidden: bot was blocked by the user"},
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        transport = TelegramTransport(client, "TOKEN", base_url="https://tg.test")
        with pytest.raises(DeliveryError) as exc_info:
            await transport.send_message(42, "hi")

    assert exc_info.value.status_code == 403
    assert is_recipient_unreachable(exc_info.value)


@pytest.mark.asyncio
async def test_network_failure_raises_delivery_error():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        transport = TelegramTransport(client, "TOKEN", base_url="https://tg.test")
        with pytest.raises(DeliveryError) as exc_info:
            await transport.send_message(42, "hi")

    assert not is_recipient_unreachable(exc_info.value)
