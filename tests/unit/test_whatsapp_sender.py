import json
import uuid

import httpx
import pytest

from src.messaging.domain.exceptions import ChannelSendError, SenderNotConfiguredError
from src.messaging.domain.value_objects import ChannelType
from src.messaging.infrastructure.channel_senders import SendRequest, WhatsAppCloudSender
from src.messaging.infrastructure.models import ChannelORM


def _request(credentials):
    channel = ChannelORM(id=uuid.uuid4(), type=ChannelType.WHATSAPP_OFFICIAL, credentials=credentials)
    return SendRequest(
        tenant_id=uuid.uuid4(),
        channel=channel,
        conversation_id=uuid.uuid4(),
        message_id=uuid.uuid4(),
        recipient="966500000001@s.whatsapp.net",
        content="Hello there",
    )


async def test_posts_text_message_and_reads_provider_id():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"messages": [{"id": "wamid.OK"}]})

    sender = WhatsAppCloudSender(base_url="https://graph.test/v21.0", transport=httpx.MockTransport(handler))
    receipt = await sender.send(_request({"phone_number_id": "PNID1", "access_token": "tkn"}))

    assert receipt.provider_message_id == "wamid.OK"
    assert captured["url"] == "https://graph.test/v21.0/PNID1/messages"
    assert captured["auth"] == "Bearer tkn"
    assert captured["body"] == {
        "messaging_product": "whatsapp",
        "to": "966500000001",
        "type": "text",
        "text": {"body": "Hello there"},
    }


async def test_non_2xx_raises_channel_send_error():
    transport = httpx.MockTransport(lambda request: httpx.Response(500, text="upstream down"))
    sender = WhatsAppCloudSender(transport=transport)
    with pytest.raises(ChannelSendError) as exc:
        await sender.send(_request({"phoneNumberId": "PNID1", "accessToken": "tkn"}))
    assert exc.value.details["status_code"] == 500


async def test_missing_credentials_never_calls_the_api():
    calls = []
    transport = httpx.MockTransport(lambda request: calls.append(request) or httpx.Response(200, json={}))
    sender = WhatsAppCloudSender(transport=transport)
    with pytest.raises(SenderNotConfiguredError):
        await sender.send(_request({}))
    assert calls == []


async def test_success_without_message_id_yields_empty_receipt():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"messages": []}))
    sender = WhatsAppCloudSender(transport=transport)
    receipt = await sender.send(_request({"phone_number_id": "PNID1", "access_token": "tkn"}))
    assert receipt.provider_message_id is None
