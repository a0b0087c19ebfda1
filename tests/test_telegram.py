import json

import httpx
import pytest

from app.types.errors import DeliveryError
from app.utils.telegram import TelegramTransport


@pytest.mark.asyncio
async def test_send_message_to_forum_thread():
    seen = []

    def handler(request):
        seen.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"ok": True, "result": {"message_id": 321}})

    transport = TelegramTransport("123:abc", transport=httpx.MockTransport(handler))
    assert await transport.send_message(-100, 42, "hi") == 321
    assert seen == [("/bot123:abc/sendMessage", {"chat_id": -100, "text": "hi", "message_thread_id": 42})]


@pytest.mark.asyncio
async def test_rejected_message_raises_delivery_error():
    def handler(request):
        return httpx.Response(400, json={"ok": False, "description": "Bad Request: chat not found"})

    transport = TelegramTransport("123:abc", transport=httpx.MockTransport(handler))
    with pytest.raises(DeliveryError) as excinfo:
        await transport.send_message(-100, None, "hi")
    assert excinfo.value.status == 400
    assert "chat not found" in excinfo.value.message


@pytest.mark.asyncio
async def test_network_error_raises_delivery_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    transport = TelegramTransport("123:abc", transport=httpx.MockTransport(handler))
    with pytest.raises(DeliveryError) as excinfo:
        await transport.send_message(-100, None, "hi")
    assert excinfo.value.status is None


@pytest.mark.asyncio
async def test_dev_mode_without_token():
    assert await TelegramTransport(None).send_message(-100, None, "hi") == 0
